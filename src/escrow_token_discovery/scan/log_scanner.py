"""Adaptive range-splitting `eth_getLogs` scanner.

A block range is requested in one query. When the provider refuses it as too
large (`LogRangeLimitError`), the range is halved and both halves are scanned
concurrently; results are concatenated left half first, so the observed log
sequence is identical to a single unlimited query.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from web3 import AsyncWeb3

from escrow_token_discovery.chain.client import LogRangeLimitError

logger = logging.getLogger(__name__)

# ERC20 Transfer(address,address,uint256)
TRANSFER_EVENT_SIGNATURE = "0x" + AsyncWeb3.keccak(text="Transfer(address,address,uint256)").hex().removeprefix("0x")

Topic = str | None


class LogSource(Protocol):
    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]: ...


def pad_topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    hexed = value.hex() if hasattr(value, "hex") and not isinstance(value, str) else str(value)
    return hexed if hexed.startswith("0x") else "0x" + hexed


@dataclass(frozen=True)
class LogEvent:
    """A decoded-enough view of one RPC log entry."""

    address: str
    block_number: int
    log_index: int
    transaction_hash: str
    topics: tuple[str, ...]
    data: str

    @classmethod
    def from_rpc(cls, log: dict[str, Any]) -> LogEvent:
        return cls(
            address=str(log["address"]).lower(),
            block_number=int(log["blockNumber"]),
            log_index=int(log.get("logIndex") or 0),
            transaction_hash=_hex(log.get("transactionHash") or b"").lower(),
            topics=tuple(_hex(t).lower() for t in log.get("topics") or ()),
            data=_hex(log.get("data") or b""),
        )


def transfers_to_topics(recipient: str) -> list[Topic]:
    """Topic filter matching every ERC-20 Transfer into `recipient`."""
    return [TRANSFER_EVENT_SIGNATURE, None, pad_topic_address(recipient)]


class LogScanner:
    """Fetches logs for arbitrarily large block ranges."""

    def __init__(self, source: LogSource) -> None:
        self._source = source

    async def scan(self, topics: Sequence[Topic], from_block: int, to_block: int) -> list[LogEvent]:
        """Return all logs matching `topics` in `[from_block, to_block]` inclusive."""
        if from_block < 0:
            raise ValueError("from_block must be >= 0")
        if from_block > to_block:
            return []
        return await self._scan(list(topics), from_block, to_block)

    async def _query(self, topics: list[Topic], from_block: int, to_block: int) -> list[LogEvent]:
        logs = await self._source.get_logs(
            {"topics": topics, "fromBlock": from_block, "toBlock": to_block}
        )
        return [LogEvent.from_rpc(log) for log in logs]

    async def _scan(self, topics: list[Topic], from_block: int, to_block: int) -> list[LogEvent]:
        if from_block == to_block:
            return await self._query(topics, from_block, to_block)

        try:
            return await self._query(topics, from_block, to_block)
        except LogRangeLimitError as e:
            mid = from_block + (to_block - from_block) // 2
            logger.debug(
                "Range %d-%d rejected (%s), splitting at %d",
                from_block,
                to_block,
                e,
                mid,
            )

        left = asyncio.ensure_future(self._scan(topics, from_block, mid))
        right = asyncio.ensure_future(self._scan(topics, mid + 1, to_block))
        try:
            left_logs, right_logs = await asyncio.gather(left, right)
        except BaseException:
            left.cancel()
            right.cancel()
            raise
        return left_logs + right_logs
