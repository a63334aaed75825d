"""CoinGecko API client and token identity lookup."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from escrow_token_discovery.http import HttpClient

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.coingecko.com/api/v3"

# Chain name -> CoinGecko asset platform id.
PLATFORM_IDS: dict[str, str] = {
    "ethereum": "ethereum",
    "arbitrum": "arbitrum-one",
    "optimism": "optimistic-ethereum",
    "base": "base",
    "polygon": "polygon-pos",
    "bsc": "binance-smart-chain",
    "avalanche": "avalanche",
    "zksync2": "zksync",
    "linea": "linea",
    "scroll": "scroll",
    "mantle": "mantle",
    "blast": "blast",
}


@dataclass(frozen=True)
class CoinListEntry:
    id: str
    symbol: str
    platforms: dict[str, str]


@dataclass(frozen=True)
class TokenIdentity:
    external_id: str
    symbol: str


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal(0)
    return Decimal(str(value))


class CoingeckoClient:
    """Read-only client for `/coins/list` and `/coins/markets`."""

    def __init__(
        self,
        http: HttpClient,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str | None = None,
    ) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key

    def _params(self, params: dict[str, str]) -> dict[str, str]:
        if self._api_key:
            key_param = "x_cg_pro_api_key" if "pro-api" in self._base_url else "x_cg_demo_api_key"
            params[key_param] = self._api_key
        return params

    async def get_coin_list(self) -> list[CoinListEntry]:
        """All coins with their per-platform contract addresses."""
        payload = await self._http.get_json(
            f"{self._base_url}/coins/list",
            params=self._params({"include_platform": "true"}),
        )
        entries = []
        for coin in payload or []:
            platforms = {
                platform: address.lower()
                for platform, address in (coin.get("platforms") or {}).items()
                if address
            }
            entries.append(CoinListEntry(id=coin["id"], symbol=str(coin.get("symbol") or ""), platforms=platforms))
        logger.debug("Fetched %d coins from CoinGecko", len(entries))
        return entries

    async def get_coins_markets(self, ids: Sequence[str]) -> list[dict[str, Any]]:
        """Market data for `ids`: dicts with `id`, `market_cap`, `current_price`, `circulating_supply`."""
        if not ids:
            return []
        payload = await self._http.get_json(
            f"{self._base_url}/coins/markets",
            params=self._params(
                {
                    "vs_currency": "usd",
                    "ids": ",".join(ids),
                    "per_page": str(max(len(ids), 1)),
                }
            ),
        )
        return [
            {
                "id": row["id"],
                "market_cap": _decimal(row.get("market_cap")),
                "current_price": _decimal(row.get("current_price")),
                "circulating_supply": _decimal(row.get("circulating_supply")),
            }
            for row in payload or []
        ]


class TokenIdentityLookup:
    """Maps `(chain, address)` to a CoinGecko id and symbol."""

    def __init__(self, entries: Sequence[CoinListEntry], *, platform_ids: dict[str, str] | None = None) -> None:
        self._platform_ids = platform_ids or PLATFORM_IDS
        self._by_platform: dict[tuple[str, str], TokenIdentity] = {}
        for entry in entries:
            for platform, address in entry.platforms.items():
                # First listing wins, matching the coin list order.
                self._by_platform.setdefault(
                    (platform, address.lower()),
                    TokenIdentity(external_id=entry.id, symbol=entry.symbol),
                )

    @classmethod
    async def load(cls, client: CoingeckoClient) -> TokenIdentityLookup:
        return cls(await client.get_coin_list())

    def lookup(self, chain: str, address: str) -> TokenIdentity | None:
        platform = self._platform_ids.get(chain, chain)
        return self._by_platform.get((platform, address.lower()))

    def __len__(self) -> int:
        return len(self._by_platform)
