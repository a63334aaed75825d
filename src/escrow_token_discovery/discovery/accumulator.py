"""Escrow token accumulator.

Keeps the in-memory map of every tracked token and its balance in each
escrow. Scanning an escrow updates only that escrow's entries; everything
else in the map is left untouched.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Context, Decimal
from typing import Protocol

from escrow_token_discovery.catalog import Escrow, TokenId
from escrow_token_discovery.market.coingecko import TokenIdentity
from escrow_token_discovery.scan.log_scanner import LogEvent
from escrow_token_discovery.storage.repos import DiscoveredTokenDTO, EscrowBalanceDTO

logger = logging.getLogger(__name__)

# uint256 has at most 78 decimal digits.
_EXACT = Context(prec=100)


class TokenReader(Protocol):
    async def get_token_balance(self, holder_address: str, token_address: str) -> int: ...

    async def get_token_decimals(self, token_address: str) -> int: ...


class IdentityLookup(Protocol):
    def lookup(self, chain: str, address: str) -> TokenIdentity | None: ...


def to_human_balance(units: int | Decimal, decimals: int) -> Decimal:
    return Decimal(units).scaleb(-decimals, context=_EXACT)


@dataclass(frozen=True)
class EscrowHolding:
    """Latest balance of one token in one escrow."""

    balance_units: int
    decimals: int
    project_id: str

    @property
    def balance(self) -> Decimal:
        return to_human_balance(self.balance_units, self.decimals)


@dataclass
class TrackedToken:
    chain: str
    address: str
    external_id: str | None = None
    symbol: str | None = None
    escrows: dict[str, EscrowHolding] = field(default_factory=dict)

    @property
    def key(self) -> TokenId:
        return (self.chain, self.address)


async def _read_pair(
    balance: Awaitable[int],
    decimals: Awaitable[int],
) -> tuple[int, int]:
    """Run both reads concurrently; if one fails the other is cancelled."""
    balance_task = asyncio.ensure_future(balance)
    decimals_task = asyncio.ensure_future(decimals)
    try:
        units, precision = await asyncio.gather(balance_task, decimals_task)
    except BaseException:
        balance_task.cancel()
        decimals_task.cancel()
        raise
    return int(units), int(precision)


class EscrowTokenAccumulator:
    """Merges scanned transfer logs into the tracked token map.

    The map is insertion-ordered; insertion order is the discovery order used
    to break ranking ties.
    """

    def __init__(
        self,
        *,
        readers: dict[str, TokenReader],
        identities: IdentityLookup,
        known_tokens: Iterable[TokenId] = (),
    ) -> None:
        self._readers = readers
        self._identities = identities
        self._known = frozenset(known_tokens)
        self.tokens: dict[TokenId, TrackedToken] = {}

    def load(self, tokens: Sequence[DiscoveredTokenDTO], balances: Sequence[EscrowBalanceDTO]) -> None:
        """Seed the map from persisted state, preserving the persisted order."""
        for dto in tokens:
            key = (dto.chain, dto.address.lower())
            self.tokens[key] = TrackedToken(
                chain=dto.chain,
                address=key[1],
                external_id=dto.external_id,
                symbol=dto.symbol,
            )
        for balance in balances:
            token = self.tokens.get((balance.chain, balance.token_address.lower()))
            if token is None:
                logger.warning(
                    "Ignoring balance for untracked token %s on %s",
                    balance.token_address,
                    balance.chain,
                )
                continue
            token.escrows[balance.escrow_address.lower()] = EscrowHolding(
                balance_units=int(balance.balance_units),
                decimals=balance.decimals,
                project_id=balance.project_id,
            )
        logger.info("Loaded %d tracked tokens", len(self.tokens))

    def _candidates(self, escrow: Escrow, logs: Sequence[LogEvent]) -> list[TokenId]:
        candidates: list[TokenId] = []
        seen: set[TokenId] = set()

        for log in logs:
            key = (escrow.chain, log.address.lower())
            if key in seen:
                continue
            seen.add(key)
            if key in self._known:
                continue
            identity = self._identities.lookup(*key)
            if identity is None:
                continue
            token = self.tokens.get(key)
            if token is None:
                token = TrackedToken(chain=key[0], address=key[1])
                self.tokens[key] = token
                logger.info("Discovered token %s (%s) on %s", key[1], identity.external_id, key[0])
            token.external_id = identity.external_id
            token.symbol = identity.symbol
            candidates.append(key)

        # Tokens already held by this escrow are refreshed whether or not they
        # emitted logs in this range, including ones later marked as known.
        chosen = set(candidates)
        for key, token in self.tokens.items():
            if key not in chosen and token.chain == escrow.chain and escrow.address in token.escrows:
                candidates.append(key)
        return candidates

    async def _read_holding(self, escrow: Escrow, token: TrackedToken) -> EscrowHolding:
        reader = self._readers[escrow.chain]
        try:
            units, decimals = await _read_pair(
                reader.get_token_balance(escrow.address, token.address),
                reader.get_token_decimals(token.address),
            )
        except Exception as e:
            logger.warning(
                "Failed to get balance for token %s in escrow %s on %s: %s",
                token.address,
                escrow.address,
                escrow.chain,
                e,
            )
            previous = token.escrows.get(escrow.address)
            return EscrowHolding(
                balance_units=0,
                decimals=previous.decimals if previous else 0,
                project_id=escrow.project_id,
            )
        return EscrowHolding(balance_units=units, decimals=decimals, project_id=escrow.project_id)

    async def ingest(self, escrow: Escrow, logs: Sequence[LogEvent]) -> dict[TokenId, TrackedToken]:
        """Update balances in `escrow` for every candidate token seen in `logs`.

        Tokens are read one after another; each token's balance and decimals
        are read concurrently.
        """
        if escrow.chain not in self._readers:
            raise KeyError(f"No token reader for chain {escrow.chain!r}")

        for key in self._candidates(escrow, logs):
            token = self.tokens[key]
            token.escrows[escrow.address] = await self._read_holding(escrow, token)
        return self.tokens

    def snapshot(self) -> tuple[list[DiscoveredTokenDTO], list[EscrowBalanceDTO]]:
        """The full dataset, in discovery order, ready to persist."""
        tokens = [
            DiscoveredTokenDTO(
                chain=token.chain,
                address=token.address,
                external_id=token.external_id,
                symbol=token.symbol,
            )
            for token in self.tokens.values()
        ]
        balances = [
            EscrowBalanceDTO(
                chain=token.chain,
                token_address=token.address,
                escrow_address=escrow_address,
                balance_units=Decimal(holding.balance_units),
                decimals=holding.decimals,
                project_id=holding.project_id,
            )
            for token in self.tokens.values()
            for escrow_address, holding in token.escrows.items()
        ]
        return tokens, balances
