"""Repository pattern implementations for data access.

This module provides data access abstractions for indexer configurations
(scan progress), discovered tokens, and escrow balances.

All bulk upserts are batched and only rewrite a conflicting row when at
least one non-key column actually changed. Unconditional `DO UPDATE` on a
high-churn table creates a new physical row version per call, and the table
keeps growing even though its logical row count is stable.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from escrow_token_discovery.storage.models import (
    Base,
    DiscoveredTokenModel,
    EscrowBalanceModel,
    IndexerConfigurationModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5_000
CONFIGURATION_ID_LENGTH = 12


def canonical_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def configuration_id(indexer_id: str, key: Mapping[str, Any]) -> str:
    """Content-derived configuration id.

    Identical `(indexer_id, key)` pairs always hash to the same id, no matter
    how the key mapping was built.
    """
    digest = hashlib.sha256(canonical_json({"indexer": indexer_id, "key": key}).encode()).hexdigest()
    return digest[:CONFIGURATION_ID_LENGTH]


def _dialect_insert(session: AsyncSession, model: type[Base]) -> Any:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upsert is not supported for dialect {dialect!r}")


async def _upsert_changed(
    session: AsyncSession,
    model: type[Base],
    rows: Sequence[dict[str, Any]],
    *,
    index_elements: Sequence[str],
    update_columns: Sequence[str],
    batch_size: int,
) -> int:
    """Batched `INSERT ... ON CONFLICT DO UPDATE ... WHERE <changed>`.

    Each batch is one statement, hence one atomic unit. Rows sharing a
    conflict key are collapsed first (last one wins, first position kept),
    since PostgreSQL rejects a statement that updates the same row twice.
    Returns the number of rows physically inserted or updated.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    unique: dict[tuple[Any, ...], dict[str, Any]] = {}
    for row in rows:
        unique[tuple(row[column] for column in index_elements)] = row
    rows = list(unique.values())

    written = 0
    for start in range(0, len(rows), batch_size):
        batch = list(rows[start : start + batch_size])
        stmt = _dialect_insert(session, model).values(batch)
        changed = sa.or_(
            *[getattr(model, column).is_distinct_from(stmt.excluded[column]) for column in update_columns]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_={column: stmt.excluded[column] for column in update_columns},
            where=changed,
        )
        result = await session.execute(stmt)
        written += max(0, result.rowcount or 0)  # type: ignore[attr-defined]
    await session.flush()
    return written


@dataclass(frozen=True)
class IndexerConfiguration:
    """One scan scope of one indexer, together with its progress.

    Invariant: `min_height <= current_height <= max_height` whenever the
    optional bounds are set.
    """

    id: str
    indexer_id: str
    properties: str
    current_height: int | None
    min_height: int
    max_height: int | None = None

    def __post_init__(self) -> None:
        if self.min_height < 0:
            raise ValueError("min_height must be >= 0")
        if self.max_height is not None and self.max_height < self.min_height:
            raise ValueError(f"max_height {self.max_height} < min_height {self.min_height} ({self.id})")
        if self.current_height is not None:
            self.check_height(self.current_height)

    def check_height(self, height: int) -> None:
        if height < self.min_height or (self.max_height is not None and height > self.max_height):
            raise ValueError(
                f"Height {height} outside [{self.min_height}, {self.max_height}] for configuration {self.id}"
            )

    @classmethod
    def create(
        cls,
        indexer_id: str,
        *,
        key: Mapping[str, Any],
        properties: Mapping[str, Any],
        min_height: int,
        max_height: int | None = None,
        current_height: int | None = None,
    ) -> IndexerConfiguration:
        return cls(
            id=configuration_id(indexer_id, key),
            indexer_id=indexer_id,
            properties=canonical_json(properties),
            current_height=current_height,
            min_height=min_height,
            max_height=max_height,
        )

    @classmethod
    def from_model(cls, model: IndexerConfigurationModel) -> IndexerConfiguration:
        return cls(
            id=model.id,
            indexer_id=model.indexer_id,
            properties=model.properties,
            current_height=model.current_height,
            min_height=model.min_height,
            max_height=model.max_height,
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "indexer_id": self.indexer_id,
            "properties": self.properties,
            "current_height": self.current_height,
            "min_height": self.min_height,
            "max_height": self.max_height,
        }


class IndexerConfigurationRepository:
    """Multi-tenant store of indexer configurations and their heights."""

    _UPDATE_COLUMNS = ("indexer_id", "properties", "current_height", "min_height", "max_height")

    def __init__(self, session: AsyncSession, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
            batch_size: Rows per upsert statement.
        """
        self.session = session
        self._batch_size = batch_size

    async def upsert_many(self, configurations: Sequence[IndexerConfiguration]) -> int:
        """Insert or update configurations by id.

        Rows whose stored content already equals the incoming content are
        left untouched (no physical write).

        Returns:
            Number of distinct configurations submitted.
        """
        if not configurations:
            return 0
        by_id = {c.id: c for c in configurations}
        rows = [c.to_row() for c in by_id.values()]
        written = await _upsert_changed(
            self.session,
            IndexerConfigurationModel,
            rows,
            index_elements=["id"],
            update_columns=self._UPDATE_COLUMNS,
            batch_size=self._batch_size,
        )
        logger.debug("Upserted %d configurations (%d rows written)", len(rows), written)
        return len(rows)

    async def get_by_indexer(self, indexer_id: str) -> list[IndexerConfiguration]:
        result = await self.session.execute(
            select(IndexerConfigurationModel)
            .where(IndexerConfigurationModel.indexer_id == indexer_id)
            .order_by(IndexerConfigurationModel.id)
        )
        return [IndexerConfiguration.from_model(m) for m in result.scalars().all()]

    async def get_by_ids(self, ids: Sequence[str]) -> list[IndexerConfiguration]:
        if not ids:
            return []
        result = await self.session.execute(
            select(IndexerConfigurationModel)
            .where(IndexerConfigurationModel.id.in_(list(ids)))
            .order_by(IndexerConfigurationModel.id)
        )
        return [IndexerConfiguration.from_model(m) for m in result.scalars().all()]

    async def update_heights(
        self,
        indexer_id: str,
        ids: Sequence[str],
        current_height: int | None,
    ) -> int:
        """Set `current_height` for the given configurations of one indexer.

        Raises:
            ValueError: If the height falls outside a configuration's bounds.

        Returns:
            Number of rows updated.
        """
        if not ids:
            return 0
        if current_height is not None:
            for configuration in await self.get_by_ids(ids):
                if configuration.indexer_id == indexer_id:
                    configuration.check_height(current_height)

        result = await self.session.execute(
            update(IndexerConfigurationModel)
            .where(
                IndexerConfigurationModel.indexer_id == indexer_id,
                IndexerConfigurationModel.id.in_(list(ids)),
            )
            .values(current_height=current_height)
        )
        await self.session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def delete_excluding(self, indexer_id: str, keep_ids: Sequence[str]) -> int:
        """Delete every configuration of `indexer_id` whose id is not in `keep_ids`.

        Returns:
            Number of rows deleted.
        """
        stmt = delete(IndexerConfigurationModel).where(IndexerConfigurationModel.indexer_id == indexer_id)
        if keep_ids:
            stmt = stmt.where(IndexerConfigurationModel.id.not_in(list(keep_ids)))
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def get_all(self) -> list[IndexerConfiguration]:
        result = await self.session.execute(
            select(IndexerConfigurationModel).order_by(IndexerConfigurationModel.id)
        )
        return [IndexerConfiguration.from_model(m) for m in result.scalars().all()]

    async def delete_all(self) -> int:
        result = await self.session.execute(delete(IndexerConfigurationModel))
        await self.session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


@dataclass
class DiscoveredTokenDTO:
    """Data transfer object for discovered tokens."""

    chain: str
    address: str
    external_id: str | None = None
    symbol: str | None = None

    @classmethod
    def from_model(cls, model: DiscoveredTokenModel) -> DiscoveredTokenDTO:
        return cls(
            chain=model.chain,
            address=model.address,
            external_id=model.external_id,
            symbol=model.symbol,
        )


@dataclass
class EscrowBalanceDTO:
    """Data transfer object for escrow balances."""

    chain: str
    token_address: str
    escrow_address: str
    balance_units: Decimal
    decimals: int
    project_id: str

    @classmethod
    def from_model(cls, model: EscrowBalanceModel) -> EscrowBalanceDTO:
        return cls(
            chain=model.chain,
            token_address=model.token_address,
            escrow_address=model.escrow_address,
            balance_units=Decimal(model.balance_units),
            decimals=model.decimals,
            project_id=model.project_id,
        )


class DiscoveredTokenRepository:
    """Repository for discovered tokens."""

    def __init__(self, session: AsyncSession, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.session = session
        self._batch_size = batch_size

    async def upsert_many(self, dtos: Sequence[DiscoveredTokenDTO]) -> int:
        """Insert new tokens and update changed metadata; rows are never deleted.

        Rows are inserted in the given order, which becomes the persisted
        discovery order.
        """
        if not dtos:
            return 0
        now = datetime.now(UTC)
        rows = [
            {
                "chain": dto.chain,
                "address": dto.address.lower(),
                "external_id": dto.external_id,
                "symbol": dto.symbol,
                "created_at": now,
            }
            for dto in dtos
        ]
        return await _upsert_changed(
            self.session,
            DiscoveredTokenModel,
            rows,
            index_elements=["chain", "address"],
            update_columns=("external_id", "symbol"),
            batch_size=self._batch_size,
        )

    async def list_all(self) -> list[DiscoveredTokenDTO]:
        """All tokens in discovery order."""
        result = await self.session.execute(select(DiscoveredTokenModel).order_by(DiscoveredTokenModel.id))
        return [DiscoveredTokenDTO.from_model(m) for m in result.scalars().all()]


class EscrowBalanceRepository:
    """Repository for per-escrow token balances."""

    def __init__(self, session: AsyncSession, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.session = session
        self._batch_size = batch_size

    async def upsert_many(self, dtos: Sequence[EscrowBalanceDTO]) -> int:
        """Overwrite balances keyed by (chain, token, escrow); unchanged rows are skipped."""
        if not dtos:
            return 0
        rows = [
            {
                "chain": dto.chain,
                "token_address": dto.token_address.lower(),
                "escrow_address": dto.escrow_address.lower(),
                "balance_units": dto.balance_units,
                "decimals": dto.decimals,
                "project_id": dto.project_id,
            }
            for dto in dtos
        ]
        return await _upsert_changed(
            self.session,
            EscrowBalanceModel,
            rows,
            index_elements=["chain", "token_address", "escrow_address"],
            update_columns=("balance_units", "decimals", "project_id"),
            batch_size=self._batch_size,
        )

    async def list_all(self) -> list[EscrowBalanceDTO]:
        result = await self.session.execute(
            select(EscrowBalanceModel).order_by(
                EscrowBalanceModel.chain,
                EscrowBalanceModel.token_address,
                EscrowBalanceModel.escrow_address,
            )
        )
        return [EscrowBalanceDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_escrow(self, chain: str, escrow_address: str) -> list[EscrowBalanceDTO]:
        result = await self.session.execute(
            select(EscrowBalanceModel).where(
                EscrowBalanceModel.chain == chain,
                EscrowBalanceModel.escrow_address == escrow_address.lower(),
            )
        )
        return [EscrowBalanceDTO.from_model(m) for m in result.scalars().all()]
