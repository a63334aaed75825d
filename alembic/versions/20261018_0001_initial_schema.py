"""Initial schema for indexer configurations, discovered tokens and escrow balances.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Scan progress, one row per (indexer, configuration)
    op.create_table(
        "indexer_configurations",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("indexer_id", sa.String(200), nullable=False),
        sa.Column("properties", sa.Text(), nullable=False),
        sa.Column("current_height", sa.BigInteger(), nullable=True),
        sa.Column("min_height", sa.BigInteger(), nullable=False),
        sa.Column("max_height", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_indexer_configurations_indexer_id", "indexer_configurations", ["indexer_id"])

    # Discovered tokens; id order is discovery order
    op.create_table(
        "discovered_tokens",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chain", sa.String(64), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("external_id", sa.String(200), nullable=True),
        sa.Column("symbol", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain", "address", name="uq_discovered_tokens_chain_address"),
    )

    # Latest balance per (token, escrow)
    op.create_table(
        "escrow_balances",
        sa.Column("chain", sa.String(64), nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("escrow_address", sa.String(42), nullable=False),
        # Decimal text on SQLite, which cannot hold uint256 exactly
        sa.Column("balance_units", sa.Numeric(78, 0).with_variant(sa.String(78), "sqlite"), nullable=False),
        sa.Column("decimals", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.String(200), nullable=False),
        sa.PrimaryKeyConstraint("chain", "token_address", "escrow_address"),
    )
    op.create_index("idx_escrow_balances_escrow", "escrow_balances", ["chain", "escrow_address"])


def downgrade() -> None:
    op.drop_index("idx_escrow_balances_escrow", table_name="escrow_balances")
    op.drop_table("escrow_balances")
    op.drop_table("discovered_tokens")
    op.drop_index("idx_indexer_configurations_indexer_id", table_name="indexer_configurations")
    op.drop_table("indexer_configurations")
