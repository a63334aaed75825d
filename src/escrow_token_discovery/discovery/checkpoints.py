"""Per-escrow scan checkpoints backed by the indexer configuration table.

Each escrow is one configuration of the discovery indexer:
- `id` is the content digest of `(chain, address)`
- `min_height` is the block at or before the escrow's `sinceTimestamp`,
  resolved once when the escrow is first registered
- `current_height` is the chain head observed at the last committed scan

A commit writes the new height together with the full token and balance
dataset in a single transaction, so the two are never observed out of sync.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from escrow_token_discovery.catalog import Escrow
from escrow_token_discovery.chain.explorer import BlockLowerBound
from escrow_token_discovery.storage.repos import (
    DEFAULT_BATCH_SIZE,
    DiscoveredTokenRepository,
    EscrowBalanceRepository,
    IndexerConfiguration,
    IndexerConfigurationRepository,
    configuration_id,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_token_discovery.discovery.accumulator import EscrowTokenAccumulator
    from escrow_token_discovery.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def escrow_key(escrow: Escrow) -> dict[str, str]:
    return {"chain": escrow.chain, "address": escrow.address}


def escrow_properties(escrow: Escrow) -> dict[str, str | int]:
    return {
        "chain": escrow.chain,
        "address": escrow.address,
        "projectId": escrow.project_id,
        "sinceTimestamp": int(escrow.since_timestamp.timestamp()),
    }


class CheckpointStore:
    """Durable resume heights for escrow scan scopes."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        indexer_id: str,
        lower_bounds: Mapping[str, BlockLowerBound],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """Initialize the store.

        Args:
            db: Database manager providing transactional sessions.
            indexer_id: Indexer under which escrow configurations are kept.
            lower_bounds: Per-chain timestamp -> block resolvers for first scans.
            batch_size: Rows per upsert statement.
        """
        self._db = db
        self._indexer_id = indexer_id
        self._lower_bounds = lower_bounds
        self._batch_size = batch_size

    def configuration_id(self, escrow: Escrow) -> str:
        return configuration_id(self._indexer_id, escrow_key(escrow))

    def _configurations(self, session: AsyncSession) -> IndexerConfigurationRepository:
        return IndexerConfigurationRepository(session, batch_size=self._batch_size)

    async def _resolve_min_height(self, escrow: Escrow) -> int:
        resolver = self._lower_bounds.get(escrow.chain)
        if resolver is None:
            raise KeyError(f"No block lower-bound resolver for chain {escrow.chain!r}")
        height = await resolver.get_block_number_at_or_before(escrow.since_timestamp)
        logger.info(
            "Escrow %s on %s starts at block %d (%s)",
            escrow.address,
            escrow.chain,
            height,
            escrow.since_timestamp.isoformat(),
        )
        return height

    async def _build(self, escrow: Escrow, existing: IndexerConfiguration | None) -> IndexerConfiguration:
        properties = escrow_properties(escrow)
        min_height: int | None = None
        current_height: int | None = None
        if existing is not None:
            stored = json.loads(existing.properties)
            if stored.get("sinceTimestamp") == properties["sinceTimestamp"]:
                min_height = existing.min_height
            current_height = existing.current_height
        if min_height is None:
            min_height = await self._resolve_min_height(escrow)
        if current_height is not None and existing is not None and min_height < existing.min_height:
            # An earlier start brings blocks below the checkpoint into scope.
            logger.info(
                "Escrow %s on %s now starts at block %d (was %d); rescanning from the start",
                escrow.address,
                escrow.chain,
                min_height,
                existing.min_height,
            )
            current_height = None
        if current_height is not None and current_height < min_height:
            current_height = None

        return IndexerConfiguration.create(
            self._indexer_id,
            key=escrow_key(escrow),
            properties=properties,
            min_height=min_height,
            current_height=current_height,
        )

    async def sync_scopes(self, escrows: Sequence[Escrow]) -> list[IndexerConfiguration]:
        """Register every escrow as a configuration and prune the rest.

        Lower bounds are only resolved for escrows not registered before, and
        unchanged configurations are not rewritten.
        """
        async with self._db.get_async_session() as session:
            repo = self._configurations(session)
            existing = {c.id: c for c in await repo.get_by_indexer(self._indexer_id)}

            configurations = []
            for escrow in escrows:
                existing_config = existing.get(self.configuration_id(escrow))
                configurations.append(await self._build(escrow, existing_config))

            await repo.upsert_many(configurations)
            pruned = await repo.delete_excluding(self._indexer_id, [c.id for c in configurations])

        if pruned:
            logger.info("Pruned %d configurations of escrows no longer in the catalog", pruned)
        return configurations

    async def _get_or_register(self, session: AsyncSession, escrow: Escrow) -> IndexerConfiguration:
        repo = self._configurations(session)
        found = await repo.get_by_ids([self.configuration_id(escrow)])
        if found:
            return found[0]
        configuration = await self._build(escrow, None)
        await repo.upsert_many([configuration])
        return configuration

    async def get_resume_height(self, escrow: Escrow) -> int:
        """Last committed height, or the escrow's lower bound if never scanned."""
        async with self._db.get_async_session() as session:
            configuration = await self._get_or_register(session, escrow)
        if configuration.current_height is not None:
            return configuration.current_height
        return configuration.min_height

    async def commit(self, escrow: Escrow, height: int, accumulator: EscrowTokenAccumulator) -> int:
        """Persist `height` and the accumulator's full dataset atomically.

        The stored height never decreases, and never falls below the escrow's
        lower bound (a lagging head on the first scan commits `min_height`).

        Returns:
            The height actually stored.
        """
        tokens, balances = accumulator.snapshot()
        async with self._db.get_async_session() as session:
            configuration = await self._get_or_register(session, escrow)
            floor = configuration.current_height
            if floor is None:
                floor = configuration.min_height
            committed = max(floor, height)

            await self._configurations(session).update_heights(
                self._indexer_id, [configuration.id], committed
            )
            new_tokens = await DiscoveredTokenRepository(session, batch_size=self._batch_size).upsert_many(tokens)
            new_balances = await EscrowBalanceRepository(session, batch_size=self._batch_size).upsert_many(balances)

        logger.info(
            "Committed escrow %s on %s at block %d (%d token rows, %d balance rows written)",
            escrow.address,
            escrow.chain,
            committed,
            new_tokens,
            new_balances,
        )
        return committed

    async def load_into(self, accumulator: EscrowTokenAccumulator) -> None:
        """Seed `accumulator` with the persisted tokens and balances."""
        async with self._db.get_async_session() as session:
            tokens = await DiscoveredTokenRepository(session).list_all()
            balances = await EscrowBalanceRepository(session).list_all()
        accumulator.load(tokens, balances)
