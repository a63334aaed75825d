"""Ranking of discovered tokens by unaccounted escrowed value."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any

from escrow_token_discovery.catalog import TokenId
from escrow_token_discovery.discovery.accumulator import TrackedToken
from escrow_token_discovery.market.enricher import MarketSnapshot

logger = logging.getLogger(__name__)

MIN_MARKET_CAP = Decimal("10000000")
MIN_MISSING_VALUE = Decimal("10000")


class MissingIdentityError(Exception):
    """Raised when a token reaches ranking without an external market id."""


@dataclass(frozen=True)
class RankedEscrow:
    address: str
    project: str
    balance: Decimal
    value: int


@dataclass(frozen=True)
class RankedToken:
    chain: str
    address: str
    external_id: str
    symbol: str | None
    market_cap: int
    circulating_supply: Decimal
    missing_value: int
    escrows: tuple[RankedEscrow, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain": self.chain,
            "address": self.address,
            "symbol": self.symbol,
            "coingeckoId": self.external_id,
            "marketCap": self.market_cap,
            "circulatingSupply": format(self.circulating_supply, "f"),
            "missingValue": self.missing_value,
            "escrows": [
                {
                    "address": e.address,
                    "project": e.project,
                    "balance": format(e.balance, "f"),
                    "value": e.value,
                }
                for e in self.escrows
            ],
        }


def _rank_token(token: TrackedToken, external_id: str, snapshot: MarketSnapshot) -> RankedToken:
    escrows = []
    for address, holding in token.escrows.items():
        # Caps duplicate-mint and bridged-supply artifacts at the real supply.
        adjusted = min(holding.balance, snapshot.circulating_supply)
        escrows.append(
            RankedEscrow(
                address=address,
                project=holding.project_id,
                balance=adjusted,
                value=math.floor(adjusted * snapshot.price_usd),
            )
        )

    return RankedToken(
        chain=token.chain,
        address=token.address,
        external_id=external_id,
        symbol=token.symbol,
        market_cap=math.floor(snapshot.market_cap_usd),
        circulating_supply=snapshot.circulating_supply,
        missing_value=sum(e.value for e in escrows),
        escrows=tuple(escrows),
    )


def finalize(
    tokens: Iterable[TrackedToken],
    market_data: Mapping[TokenId, MarketSnapshot],
    *,
    min_market_cap: Decimal = MIN_MARKET_CAP,
    min_missing_value: Decimal = MIN_MISSING_VALUE,
) -> list[RankedToken]:
    """Compute USD exposure per token, filter by thresholds, sort descending.

    `tokens` must be in discovery order; ties keep that order.

    Raises:
        MissingIdentityError: If any token has no external id.
    """
    ranked = []
    for token in tokens:
        if not token.external_id:
            raise MissingIdentityError(f"Token {token.address} on {token.chain} has no external market id")
        snapshot = market_data.get(token.key) or MarketSnapshot.zero(token.external_id)
        ranked.append(_rank_token(token, token.external_id, snapshot))

    kept = [t for t in ranked if t.market_cap >= min_market_cap and t.missing_value >= min_missing_value]
    kept.sort(key=lambda t: t.missing_value, reverse=True)
    logger.info("Ranked %d tokens, %d above thresholds", len(ranked), len(kept))
    return kept


def write_report(path: Path, ranked: Iterable[RankedToken]) -> None:
    """Write `{"found": [...]}` to `path`."""
    payload = {"found": [token.to_dict() for token in ranked]}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote %d tokens to %s", len(payload["found"]), path)
