"""Tests for the block explorer client."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from escrow_token_discovery.chain.explorer import BlockExplorerClient, BlockExplorerError


@pytest.fixture
def http() -> MagicMock:
    http = MagicMock()
    http.get_json = AsyncMock(return_value={"status": "1", "message": "OK", "result": "11565019"})
    return http


class TestBlockExplorerClient:
    @pytest.mark.asyncio
    async def test_get_block_number_at_or_before(self, http: MagicMock) -> None:
        client = BlockExplorerClient(http, chain="ethereum", api_url="https://api.etherscan.io/api", api_key="k")
        ts = datetime(2021, 1, 1, tzinfo=UTC)

        assert await client.get_block_number_at_or_before(ts) == 11565019
        http.get_json.assert_awaited_once_with(
            "https://api.etherscan.io/api",
            params={
                "module": "block",
                "action": "getblocknobytime",
                "timestamp": str(int(ts.timestamp())),
                "closest": "before",
                "apikey": "k",
            },
        )

    @pytest.mark.asyncio
    async def test_error_payload_raises(self, http: MagicMock) -> None:
        http.get_json = AsyncMock(return_value={"status": "0", "message": "NOTOK", "result": "Invalid API Key"})
        client = BlockExplorerClient(http, chain="ethereum", api_url="https://api.etherscan.io/api", api_key="bad")

        with pytest.raises(BlockExplorerError, match="Invalid API Key"):
            await client.get_block_number_at_or_before(datetime(2021, 1, 1, tzinfo=UTC))

    @pytest.mark.asyncio
    async def test_naive_timestamp_rejected(self, http: MagicMock) -> None:
        client = BlockExplorerClient(http, chain="ethereum", api_url="https://api.etherscan.io/api", api_key="k")
        with pytest.raises(ValueError):
            await client.get_block_number_at_or_before(datetime(2021, 1, 1))
