"""Command-line entry point.

    python -m escrow_token_discovery discover [--catalog PATH] [--output PATH]
    python -m escrow_token_discovery init-db
    python -m escrow_token_discovery show-config
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from escrow_token_discovery.config import Settings, get_settings
from escrow_token_discovery.discovery.runner import run_discovery
from escrow_token_discovery.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="escrow_token_discovery",
        description="Discover tokens held by monitored escrows and rank unaccounted value.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    discover = sub.add_parser("discover", help="Scan escrows, refresh balances and write the report")
    discover.add_argument("--catalog", type=Path, default=None, help="Override DISCOVERY_CATALOG_PATH")
    discover.add_argument("--output", type=Path, default=None, help="Override DISCOVERY_OUTPUT_PATH")

    sub.add_parser("init-db", help="Create database tables (development only; use alembic in production)")
    sub.add_parser("show-config", help="Print the effective configuration with secrets redacted")
    return parser


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    _configure_logging(settings)

    if args.command == "show-config":
        print(json.dumps(settings.redacted_summary(), indent=2))
        return 0

    if args.command == "init-db":
        asyncio.run(_init_db(settings))
        return 0

    result = asyncio.run(run_discovery(settings=settings, catalog_path=args.catalog, output_path=args.output))
    logger.info(
        "Done: %d escrows scanned, %d tokens tracked, %d reported to %s",
        len(result.scopes),
        result.tokens_tracked,
        len(result.ranked),
        result.output_path,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
