"""End-to-end tests for the discovery runner with mocked upstreams."""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from escrow_token_discovery.catalog import Escrow
from escrow_token_discovery.chain.client import LogRangeLimitError, RPCError
from escrow_token_discovery.discovery.accumulator import EscrowTokenAccumulator
from escrow_token_discovery.discovery.checkpoints import CheckpointStore
from escrow_token_discovery.discovery.runner import DiscoveryError, DiscoveryRunner
from escrow_token_discovery.market.coingecko import TokenIdentity
from escrow_token_discovery.market.enricher import MarketEnricher
from escrow_token_discovery.storage.database import DatabaseManager

TOKEN_A = "0x" + "a" * 40
TOKEN_B = "0x" + "b" * 40


class FakeIdentities:
    def lookup(self, chain: str, address: str) -> TokenIdentity | None:
        return {
            TOKEN_A: TokenIdentity(external_id="token-a", symbol="TKA"),
            TOKEN_B: TokenIdentity(external_id="token-b", symbol="TKB"),
        }.get(address)


def _raw_log(token: str, block_number: int) -> dict[str, Any]:
    return {
        "address": token,
        "blockNumber": block_number,
        "logIndex": 0,
        "transactionHash": bytes.fromhex(f"{block_number:064x}"),
        "topics": [],
        "data": "0x",
    }


class FakeChain:
    """Chain that rejects the full first range and serves logs per block."""

    def __init__(self, head: int, logs: dict[int, list[dict[str, Any]]]) -> None:
        self.head = head
        self.logs = logs
        self.calls: list[tuple[int, int]] = []
        self.get_token_balance = AsyncMock(side_effect=lambda holder, token: {TOKEN_A: 1000, TOKEN_B: 10}[token])
        self.get_token_decimals = AsyncMock(return_value=0)

    async def get_block_number(self) -> int:
        return self.head

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        bounds = (filter_params["fromBlock"], filter_params["toBlock"])
        self.calls.append(bounds)
        if bounds == (100, 500):
            raise LogRangeLimitError("Log response size exceeded")
        return [log for b in range(bounds[0], bounds[1] + 1) for log in self.logs.get(b, [])]


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain(500, {150: [_raw_log(TOKEN_A, 150)], 420: [_raw_log(TOKEN_B, 420)]})


@pytest.fixture
def market() -> MagicMock:
    source = MagicMock()
    source.get_coins_markets = AsyncMock(
        return_value=[
            {"id": "token-a", "market_cap": 20_000_000, "current_price": 2.0, "circulating_supply": 400},
            {"id": "token-b", "market_cap": 9_999_999, "current_price": 10_000.0, "circulating_supply": 10**9},
        ]
    )
    return source


def _runner(db: DatabaseManager, chain: FakeChain, market: MagicMock) -> DiscoveryRunner:
    lower_bound = MagicMock()
    lower_bound.get_block_number_at_or_before = AsyncMock(return_value=100)
    return DiscoveryRunner(
        checkpoints=CheckpointStore(db, indexer_id="discovery", lower_bounds={"ethereum": lower_bound}),
        accumulator=EscrowTokenAccumulator(readers={"ethereum": chain}, identities=FakeIdentities()),
        chains={"ethereum": chain},
        enricher=MarketEnricher(market),
        min_market_cap=Decimal(10_000_000),
        min_missing_value=Decimal(500),
    )


class TestDiscoveryRunner:
    @pytest.mark.asyncio
    async def test_first_run_splits_scans_and_ranks(
        self, db_manager: DatabaseManager, chain: FakeChain, market: MagicMock, escrow: Escrow
    ) -> None:
        result = await _runner(db_manager, chain, market).run([escrow])

        assert chain.calls == [(100, 500), (100, 300), (301, 500)]
        [scope] = result.scopes
        assert (scope.from_block, scope.to_block, scope.logs, scope.committed_height) == (100, 500, 2, 500)
        assert result.tokens_tracked == 2

        # token-b is below the market cap threshold.
        [ranked] = result.ranked
        assert ranked.external_id == "token-a"
        assert ranked.escrows[0].balance == Decimal(400)
        assert ranked.escrows[0].value == 800
        assert ranked.missing_value == 800
        market.get_coins_markets.assert_awaited_once_with(["token-a", "token-b"])

    @pytest.mark.asyncio
    async def test_second_run_resumes_from_previous_head(
        self, db_manager: DatabaseManager, chain: FakeChain, market: MagicMock, escrow: Escrow
    ) -> None:
        await _runner(db_manager, chain, market).run([escrow])

        chain.head = 600
        chain.calls.clear()
        runner = _runner(db_manager, chain, market)
        await runner.checkpoints.load_into(runner.accumulator)
        result = await runner.run([escrow])

        assert chain.calls == [(500, 600)]
        assert result.scopes[0].committed_height == 600
        assert result.tokens_tracked == 2

    @pytest.mark.asyncio
    async def test_failed_scope_keeps_previous_commit(
        self, db_manager: DatabaseManager, chain: FakeChain, market: MagicMock, escrow: Escrow, other_escrow: Escrow
    ) -> None:
        await _runner(db_manager, chain, market).run([escrow])

        async def broken(filter_params: dict[str, Any]) -> list[dict[str, Any]]:
            raise RPCError("upstream down")

        chain.head = 700
        chain.get_logs = broken  # type: ignore[method-assign]
        runner = _runner(db_manager, chain, market)
        with pytest.raises(RPCError):
            await runner.run([escrow, other_escrow])

        assert await runner.checkpoints.get_resume_height(escrow) == 500

    @pytest.mark.asyncio
    async def test_escrow_on_unconfigured_chain(
        self, db_manager: DatabaseManager, chain: FakeChain, market: MagicMock, escrow: Escrow
    ) -> None:
        foreign = Escrow(
            chain="arbitrum",
            address=escrow.address,
            since_timestamp=escrow.since_timestamp,
            project_id="x",
        )
        with pytest.raises(DiscoveryError):
            await _runner(db_manager, chain, market).scan_escrow(foreign)
