"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrow_token_discovery.catalog import Escrow
from escrow_token_discovery.storage.database import DatabaseManager
from escrow_token_discovery.storage.models import Base

ESCROW = "0x" + "e" * 40
OTHER_ESCROW = "0x" + "f" * 40


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def db_manager(tmp_path: Path):
    """DatabaseManager over a file-backed SQLite database with the schema created."""
    db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'discovery.db'}")
    await db.init_schema_async()
    yield db
    await db.dispose_async()


@pytest.fixture
def escrow() -> Escrow:
    return Escrow(
        chain="ethereum",
        address=ESCROW,
        since_timestamp=datetime(2021, 1, 1, tzinfo=UTC),
        project_id="arbitrum",
    )


@pytest.fixture
def other_escrow() -> Escrow:
    return Escrow(
        chain="ethereum",
        address=OTHER_ESCROW,
        since_timestamp=datetime(2022, 6, 1, tzinfo=UTC),
        project_id="optimism",
    )

