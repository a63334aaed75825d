"""Tests for the escrow token accumulator."""

from __future__ import annotations

import copy
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from escrow_token_discovery.catalog import Escrow
from escrow_token_discovery.chain.client import RPCError
from escrow_token_discovery.discovery.accumulator import EscrowHolding, EscrowTokenAccumulator, to_human_balance
from escrow_token_discovery.market.coingecko import TokenIdentity
from escrow_token_discovery.scan.log_scanner import LogEvent
from escrow_token_discovery.storage.repos import DiscoveredTokenDTO, EscrowBalanceDTO

TOKEN_A = "0x" + "a" * 40
TOKEN_B = "0x" + "b" * 40
TOKEN_KNOWN = "0x" + "c" * 40
TOKEN_UNLISTED = "0x" + "d" * 40


class FakeIdentities:
    def __init__(self, identities: dict[tuple[str, str], TokenIdentity]) -> None:
        self.identities = identities

    def lookup(self, chain: str, address: str) -> TokenIdentity | None:
        return self.identities.get((chain, address))


def _event(token: str, block_number: int = 1) -> LogEvent:
    return LogEvent(
        address=token,
        block_number=block_number,
        log_index=0,
        transaction_hash="0x" + "00" * 32,
        topics=(),
        data="0x",
    )


@pytest.fixture
def identities() -> FakeIdentities:
    return FakeIdentities(
        {
            ("ethereum", TOKEN_A): TokenIdentity(external_id="token-a", symbol="TKA"),
            ("ethereum", TOKEN_B): TokenIdentity(external_id="token-b", symbol="TKB"),
            ("ethereum", TOKEN_KNOWN): TokenIdentity(external_id="known", symbol="KNW"),
        }
    )


@pytest.fixture
def reader() -> MagicMock:
    balances = {TOKEN_A: 1_500_000, TOKEN_B: 3 * 10**18}
    decimals = {TOKEN_A: 6, TOKEN_B: 18}
    reader = MagicMock()
    reader.get_token_balance = AsyncMock(side_effect=lambda holder, token: balances[token])
    reader.get_token_decimals = AsyncMock(side_effect=lambda token: decimals[token])
    return reader


@pytest.fixture
def accumulator(reader: MagicMock, identities: FakeIdentities) -> EscrowTokenAccumulator:
    return EscrowTokenAccumulator(
        readers={"ethereum": reader},
        identities=identities,
        known_tokens=[("ethereum", TOKEN_KNOWN)],
    )


class TestHumanBalance:
    def test_exact_for_uint256(self) -> None:
        units = 2**256 - 1
        assert to_human_balance(units, 18) * Decimal(10) ** 18 == Decimal(units)
        assert to_human_balance(1_500_000, 6) == Decimal("1.5")


class TestEscrowTokenAccumulator:
    @pytest.mark.asyncio
    async def test_discovers_recognized_unknown_tokens(
        self, accumulator: EscrowTokenAccumulator, escrow: Escrow, reader: MagicMock
    ) -> None:
        logs = [_event(TOKEN_A), _event(TOKEN_KNOWN), _event(TOKEN_UNLISTED), _event(TOKEN_A, 2), _event(TOKEN_B)]

        tokens = await accumulator.ingest(escrow, logs)

        assert list(tokens) == [("ethereum", TOKEN_A), ("ethereum", TOKEN_B)]
        token_a = tokens[("ethereum", TOKEN_A)]
        assert token_a.external_id == "token-a"
        assert token_a.symbol == "TKA"
        assert token_a.escrows[escrow.address] == EscrowHolding(
            balance_units=1_500_000, decimals=6, project_id="arbitrum"
        )
        assert token_a.escrows[escrow.address].balance == Decimal("1.5")
        assert tokens[("ethereum", TOKEN_B)].escrows[escrow.address].balance == Decimal(3)
        assert reader.get_token_balance.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_read_records_zero_and_continues(
        self, accumulator: EscrowTokenAccumulator, escrow: Escrow, reader: MagicMock
    ) -> None:
        def balance(holder: str, token: str) -> int:
            if token == TOKEN_A:
                raise RPCError("execution reverted")
            return 7

        reader.get_token_balance = AsyncMock(side_effect=balance)

        tokens = await accumulator.ingest(escrow, [_event(TOKEN_A), _event(TOKEN_B)])

        assert tokens[("ethereum", TOKEN_A)].escrows[escrow.address].balance == 0
        assert tokens[("ethereum", TOKEN_B)].escrows[escrow.address].balance_units == 7

    @pytest.mark.asyncio
    async def test_failed_decimals_records_zero(
        self, accumulator: EscrowTokenAccumulator, escrow: Escrow, reader: MagicMock
    ) -> None:
        reader.get_token_decimals = AsyncMock(side_effect=RPCError("not a token"))

        tokens = await accumulator.ingest(escrow, [_event(TOKEN_A)])

        holding = tokens[("ethereum", TOKEN_A)].escrows[escrow.address]
        assert holding.balance_units == 0
        assert holding.balance == 0

    @pytest.mark.asyncio
    async def test_ingest_is_idempotent(self, accumulator: EscrowTokenAccumulator, escrow: Escrow) -> None:
        logs = [_event(TOKEN_A), _event(TOKEN_B)]
        first = copy.deepcopy(await accumulator.ingest(escrow, logs))
        second = await accumulator.ingest(escrow, logs)
        assert second == first

    @pytest.mark.asyncio
    async def test_other_escrows_are_untouched(
        self, accumulator: EscrowTokenAccumulator, escrow: Escrow, other_escrow: Escrow, reader: MagicMock
    ) -> None:
        await accumulator.ingest(other_escrow, [_event(TOKEN_A)])
        other_holding = accumulator.tokens[("ethereum", TOKEN_A)].escrows[other_escrow.address]

        reader.get_token_balance = AsyncMock(return_value=99)
        await accumulator.ingest(escrow, [_event(TOKEN_A)])

        token = accumulator.tokens[("ethereum", TOKEN_A)]
        assert token.escrows[other_escrow.address] == other_holding
        assert token.escrows[escrow.address].balance_units == 99

    @pytest.mark.asyncio
    async def test_tracked_tokens_are_refreshed_without_new_logs(
        self, accumulator: EscrowTokenAccumulator, escrow: Escrow, other_escrow: Escrow, reader: MagicMock
    ) -> None:
        await accumulator.ingest(escrow, [_event(TOKEN_A)])
        await accumulator.ingest(other_escrow, [_event(TOKEN_B)])

        reader.get_token_balance = AsyncMock(return_value=0)
        reader.get_token_balance.reset_mock()
        await accumulator.ingest(escrow, [])

        reader.get_token_balance.assert_awaited_once_with(escrow.address, TOKEN_A)
        assert accumulator.tokens[("ethereum", TOKEN_A)].escrows[escrow.address].balance_units == 0
        assert accumulator.tokens[("ethereum", TOKEN_B)].escrows[other_escrow.address].balance_units == 3 * 10**18

    @pytest.mark.asyncio
    @pytest.mark.parametrize("with_transfer", [False, True])
    async def test_held_known_token_is_refreshed_either_way(
        self, accumulator: EscrowTokenAccumulator, escrow: Escrow, reader: MagicMock, with_transfer: bool
    ) -> None:
        accumulator.load(
            [DiscoveredTokenDTO(chain="ethereum", address=TOKEN_KNOWN, external_id="known", symbol="KNW")],
            [
                EscrowBalanceDTO(
                    chain="ethereum",
                    token_address=TOKEN_KNOWN,
                    escrow_address=escrow.address,
                    balance_units=Decimal(5),
                    decimals=0,
                    project_id="arbitrum",
                )
            ],
        )
        reader.get_token_balance = AsyncMock(return_value=99)
        reader.get_token_decimals = AsyncMock(return_value=0)

        logs = [_event(TOKEN_KNOWN)] if with_transfer else []
        await accumulator.ingest(escrow, logs)

        reader.get_token_balance.assert_awaited_once_with(escrow.address, TOKEN_KNOWN)
        assert accumulator.tokens[("ethereum", TOKEN_KNOWN)].escrows[escrow.address].balance_units == 99

    @pytest.mark.asyncio
    async def test_unknown_chain_rejected(self, accumulator: EscrowTokenAccumulator, escrow: Escrow) -> None:
        foreign = Escrow(
            chain="arbitrum",
            address=escrow.address,
            since_timestamp=escrow.since_timestamp,
            project_id="x",
        )
        with pytest.raises(KeyError):
            await accumulator.ingest(foreign, [])

    def test_load_and_snapshot(self, accumulator: EscrowTokenAccumulator, escrow: Escrow) -> None:
        tokens = [
            DiscoveredTokenDTO(chain="ethereum", address=TOKEN_B, external_id="token-b", symbol="TKB"),
            DiscoveredTokenDTO(chain="ethereum", address=TOKEN_A, external_id="token-a", symbol="TKA"),
        ]
        balances = [
            EscrowBalanceDTO(
                chain="ethereum",
                token_address=TOKEN_A,
                escrow_address=escrow.address,
                balance_units=Decimal(5),
                decimals=0,
                project_id="arbitrum",
            ),
            EscrowBalanceDTO(
                chain="ethereum",
                token_address=TOKEN_UNLISTED,
                escrow_address=escrow.address,
                balance_units=Decimal(1),
                decimals=0,
                project_id="arbitrum",
            ),
        ]

        accumulator.load(tokens, balances)
        snapshot_tokens, snapshot_balances = accumulator.snapshot()

        assert snapshot_tokens == tokens
        assert snapshot_balances == balances[:1]
