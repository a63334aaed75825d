"""Batched market data enrichment for tracked tokens."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

from escrow_token_discovery.catalog import TokenId
from escrow_token_discovery.discovery.accumulator import TrackedToken

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 150


class MarketDataSource(Protocol):
    async def get_coins_markets(self, ids: Sequence[str]) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class MarketSnapshot:
    external_id: str
    market_cap_usd: Decimal = Decimal(0)
    price_usd: Decimal = Decimal(0)
    circulating_supply: Decimal = Decimal(0)

    @classmethod
    def zero(cls, external_id: str) -> MarketSnapshot:
        return cls(external_id=external_id)


def _chunks(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _decimal(value: Any) -> Decimal:
    return Decimal(0) if value is None else Decimal(str(value))


class MarketEnricher:
    """Looks up market cap, price and circulating supply by external id."""

    def __init__(self, source: MarketDataSource, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._source = source
        self._batch_size = batch_size

    async def _fetch(self, ids: Sequence[str]) -> dict[str, MarketSnapshot]:
        snapshots: dict[str, MarketSnapshot] = {}
        for batch in _chunks(ids, self._batch_size):
            try:
                rows = await self._source.get_coins_markets(list(batch))
            except Exception as e:
                logger.warning("Market data batch of %d ids failed, using zeros: %s", len(batch), e)
                continue
            for row in rows:
                external_id = row.get("id")
                if external_id is None:
                    continue
                snapshots[external_id] = MarketSnapshot(
                    external_id=external_id,
                    market_cap_usd=_decimal(row.get("market_cap")),
                    price_usd=_decimal(row.get("current_price")),
                    circulating_supply=_decimal(row.get("circulating_supply")),
                )
        return snapshots

    async def enrich(self, tokens: Iterable[TrackedToken]) -> dict[TokenId, MarketSnapshot]:
        """Market snapshot for every token that has an external id.

        Tokens sharing an external id receive the same snapshot; ids the
        upstream did not return get a zero snapshot.
        """
        by_token = {t.key: t.external_id for t in tokens if t.external_id}
        unique_ids = list(dict.fromkeys(by_token.values()))
        snapshots = await self._fetch(unique_ids)

        missing = [i for i in unique_ids if i not in snapshots]
        if missing:
            logger.warning("No market data for %d ids: %s", len(missing), ", ".join(missing[:20]))

        return {
            key: snapshots.get(external_id) or MarketSnapshot.zero(external_id)
            for key, external_id in by_token.items()
        }
