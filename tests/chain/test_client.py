"""Tests for the chain RPC client."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import Web3Exception

from escrow_token_discovery.chain.client import ChainClient, LogRangeLimitError, RPCError
from escrow_token_discovery.scan.limits import RangeLimitClassifier

TOKEN = "0x" + "a" * 40
HOLDER = "0x" + "e" * 40


@pytest.fixture
def client() -> ChainClient:
    client = ChainClient(
        "ethereum",
        rpc_url="http://localhost:8545",
        fallback_rpc_url="http://localhost:8546",
        max_retries=2,
        retry_delay_seconds=0,
        max_requests_per_second=1000,
    )
    client._w3 = MagicMock()
    client._w3_fallback = MagicMock()
    return client


class TestGetLogs:
    @pytest.mark.asyncio
    async def test_returns_logs(self, client: ChainClient) -> None:
        client._w3.eth.get_logs = AsyncMock(return_value=[{"blockNumber": 1}])
        logs = await client.get_logs({"fromBlock": 1, "toBlock": 2, "topics": []})
        assert logs == [{"blockNumber": 1}]

    @pytest.mark.asyncio
    async def test_range_rejection_is_not_retried(self, client: ChainClient) -> None:
        client._w3.eth.get_logs = AsyncMock(side_effect=Web3Exception("Log response size exceeded"))
        client._w3_fallback.eth.get_logs = AsyncMock(return_value=[])

        with pytest.raises(LogRangeLimitError):
            await client.get_logs({"fromBlock": 1, "toBlock": 1_000_000, "topics": []})

        assert client._w3.eth.get_logs.await_count == 1
        client._w3_fallback.eth.get_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_extra_signature_from_classifier(self) -> None:
        client = ChainClient(
            "base",
            rpc_url="http://localhost:8545",
            retry_delay_seconds=0,
            range_limit_classifier=RangeLimitClassifier().with_signatures(["too many blocks"]),
        )
        client._w3 = MagicMock()
        client._w3.eth.get_logs = AsyncMock(side_effect=Web3Exception("Too many blocks in range"))

        with pytest.raises(LogRangeLimitError):
            await client.get_logs({"fromBlock": 0, "toBlock": 10, "topics": []})

    @pytest.mark.asyncio
    async def test_fails_over_to_fallback(self, client: ChainClient) -> None:
        client._w3.eth.get_logs = AsyncMock(side_effect=Web3Exception("503 Service Unavailable"))
        client._w3_fallback.eth.get_logs = AsyncMock(return_value=[{"blockNumber": 5}])

        logs = await client.get_logs({"fromBlock": 5, "toBlock": 5, "topics": []})

        assert logs == [{"blockNumber": 5}]
        assert client._w3.eth.get_logs.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_rpc_error(self, client: ChainClient) -> None:
        client._w3.eth.get_logs = AsyncMock(side_effect=Web3Exception("timeout"))
        client._w3_fallback.eth.get_logs = AsyncMock(side_effect=Web3Exception("timeout"))

        with pytest.raises(RPCError):
            await client.get_logs({"fromBlock": 5, "toBlock": 5, "topics": []})
        assert client._w3_fallback.eth.get_logs.await_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, client: ChainClient) -> None:
        client._w3.eth.get_logs = AsyncMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            await client.get_logs({"fromBlock": 5, "toBlock": 5, "topics": []})
        assert client._w3.eth.get_logs.await_count == 1


class TestTokenReads:
    @pytest.mark.asyncio
    async def test_decimals_served_from_cache(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=b"6")
        redis.set = AsyncMock()
        client = ChainClient("ethereum", rpc_url="http://localhost:8545", redis=redis)
        client._w3 = MagicMock()

        assert await client.get_token_decimals(TOKEN) == 6
        redis.get.assert_awaited_once_with(f"chain:ethereum:decimals:{TOKEN}")
        client._w3.eth.contract.assert_not_called()

    @pytest.mark.asyncio
    async def test_balance_of(self, client: ChainClient) -> None:
        contract = MagicMock()
        contract.functions.balanceOf.return_value.call = AsyncMock(return_value=1234)
        client._w3.eth.contract = MagicMock(return_value=contract)

        assert await client.get_token_balance(HOLDER, TOKEN) == 1234


class TestBlockSearch:
    @pytest.mark.asyncio
    async def test_binary_search_finds_block_at_or_before(self, client: ChainClient) -> None:
        client.get_block = AsyncMock(side_effect=lambda n: {"number": n, "timestamp": 1_000 + n * 12})
        client.get_latest_block = AsyncMock(return_value={"number": 100, "timestamp": 1_000 + 100 * 12})

        ts = datetime.fromtimestamp(1_000 + 50 * 12 + 5, tz=UTC)
        assert await client.get_block_number_at_or_before(ts) == 50

        exact = datetime.fromtimestamp(1_000 + 51 * 12, tz=UTC)
        assert await client.get_block_number_at_or_before(exact) == 51

    @pytest.mark.asyncio
    async def test_clamps_to_genesis_and_head(self, client: ChainClient) -> None:
        client.get_block = AsyncMock(side_effect=lambda n: {"number": n, "timestamp": 1_000 + n * 12})
        client.get_latest_block = AsyncMock(return_value={"number": 100, "timestamp": 2_200})

        assert await client.get_block_number_at_or_before(datetime.fromtimestamp(10, tz=UTC)) == 0
        assert await client.get_block_number_at_or_before(datetime.fromtimestamp(9_999, tz=UTC)) == 100

    @pytest.mark.asyncio
    async def test_naive_timestamp_rejected(self, client: ChainClient) -> None:
        with pytest.raises(ValueError):
            await client.get_block_number_at_or_before(datetime(2024, 1, 1))
