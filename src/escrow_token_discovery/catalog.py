"""Declarative catalog of monitored escrows and already-known tokens.

Expected JSON shape:

    {
      "escrows": [
        {"chain": "ethereum", "address": "0x...", "sinceTimestamp": 1600000000, "projectId": "arbitrum"}
      ],
      "knownTokens": [{"chain": "ethereum", "address": "0x..."}]
    }

`sinceTimestamp` may be unix seconds or an ISO-8601 string.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class CatalogError(Exception):
    """Raised when the catalog file is unreadable or malformed."""


TokenId = tuple[str, str]


@dataclass(frozen=True)
class Escrow:
    """A monitored custody contract. Identity is `(chain, address)`."""

    chain: str
    address: str
    since_timestamp: datetime
    project_id: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.chain, self.address)


@dataclass(frozen=True)
class Catalog:
    escrows: tuple[Escrow, ...]
    known_tokens: frozenset[TokenId]

    def for_chains(self, chains: list[str] | None) -> Catalog:
        """Restrict escrows to `chains` (all chains when None)."""
        if chains is None:
            return self
        wanted = set(chains)
        return Catalog(
            escrows=tuple(e for e in self.escrows if e.chain in wanted),
            known_tokens=self.known_tokens,
        )


def normalize_address(value: Any, *, where: str) -> str:
    if not isinstance(value, str) or not _ADDRESS_RE.match(value):
        raise CatalogError(f"{where}: invalid address {value!r}")
    return value.lower()


def _parse_timestamp(value: Any, *, where: str) -> datetime:
    if isinstance(value, bool):
        raise CatalogError(f"{where}: invalid sinceTimestamp {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise CatalogError(f"{where}: invalid sinceTimestamp {value!r}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raise CatalogError(f"{where}: invalid sinceTimestamp {value!r}")


def _require(entry: dict[str, Any], field: str, *, where: str) -> Any:
    if field not in entry or entry[field] in (None, ""):
        raise CatalogError(f"{where}: missing {field!r}")
    return entry[field]


def parse_catalog(data: Any) -> Catalog:
    """Validate a decoded catalog document."""
    if not isinstance(data, dict):
        raise CatalogError("Catalog root must be a JSON object")

    escrows: list[Escrow] = []
    seen: set[tuple[str, str]] = set()
    for i, entry in enumerate(data.get("escrows") or []):
        where = f"escrows[{i}]"
        if not isinstance(entry, dict):
            raise CatalogError(f"{where}: expected an object")
        escrow = Escrow(
            chain=str(_require(entry, "chain", where=where)).lower(),
            address=normalize_address(_require(entry, "address", where=where), where=where),
            since_timestamp=_parse_timestamp(_require(entry, "sinceTimestamp", where=where), where=where),
            project_id=str(_require(entry, "projectId", where=where)),
        )
        if escrow.key in seen:
            logger.debug("Skipping duplicate escrow %s on %s", escrow.address, escrow.chain)
            continue
        seen.add(escrow.key)
        escrows.append(escrow)

    known: set[TokenId] = set()
    for i, entry in enumerate(data.get("knownTokens") or []):
        where = f"knownTokens[{i}]"
        if not isinstance(entry, dict):
            raise CatalogError(f"{where}: expected an object")
        chain = str(_require(entry, "chain", where=where)).lower()
        known.add((chain, normalize_address(_require(entry, "address", where=where), where=where)))

    return Catalog(escrows=tuple(escrows), known_tokens=frozenset(known))


def load_catalog(path: Path) -> Catalog:
    """Read and validate the catalog at `path`.

    Raises:
        CatalogError: If the file is missing, not JSON, or malformed.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise CatalogError(f"Cannot read catalog {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise CatalogError(f"Catalog {path} is not valid JSON: {e}") from e

    catalog = parse_catalog(data)
    logger.info(
        "Loaded catalog: %d escrows, %d known tokens",
        len(catalog.escrows),
        len(catalog.known_tokens),
    )
    return catalog
