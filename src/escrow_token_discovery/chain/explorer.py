"""Etherscan-compatible block explorer client.

Only one endpoint is needed: resolving a timestamp to the last block mined
at or before it, which gives a never-scanned escrow its first scan height.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from escrow_token_discovery.http import HttpClient

logger = logging.getLogger(__name__)


class BlockExplorerError(Exception):
    """Raised when the explorer returns an error payload."""


class BlockLowerBound(Protocol):
    """Anything that can map a timestamp to a block height."""

    async def get_block_number_at_or_before(self, ts: datetime) -> int: ...


class BlockExplorerClient:
    """Etherscan-style API client (`module=block&action=getblocknobytime`)."""

    def __init__(self, http: HttpClient, *, chain: str, api_url: str, api_key: str) -> None:
        self._http = http
        self.chain = chain
        self._api_url = api_url
        self._api_key = api_key

    async def get_block_number_at_or_before(self, ts: datetime) -> int:
        if ts.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")

        payload = await self._http.get_json(
            self._api_url,
            params={
                "module": "block",
                "action": "getblocknobytime",
                "timestamp": str(int(ts.timestamp())),
                "closest": "before",
                "apikey": self._api_key,
            },
        )
        if not isinstance(payload, dict) or str(payload.get("status")) != "1":
            message = payload.get("result") if isinstance(payload, dict) else payload
            raise BlockExplorerError(f"getblocknobytime failed on {self.chain}: {message}")

        block_number = int(payload["result"])
        logger.debug("Resolved %s on %s to block %d", ts.isoformat(), self.chain, block_number)
        return block_number
