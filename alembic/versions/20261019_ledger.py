"""
Initial ledger schema.

Creates the wallets, positions, transactions and orders tables.  They
correspond to the SQLAlchemy metadata defined in
``coinsim/src/coinsim/services/ledger_store.py``; decimal columns use
the same ``ExactDecimal`` type so PostgreSQL gets ``NUMERIC`` and SQLite
exact decimal text.

Revision ID: 20261019_ledger
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa

from alembic import op
from coinsim.services.ledger_store import CoinAmount, Money, UnitPrice

# revision identifiers, used by Alembic.
revision = "20261019_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create wallets, positions, transactions and orders tables."""
    op.create_table(
        "wallets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False, unique=True),
        sa.Column("balance", Money(), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "positions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("coin_id", sa.String(128), nullable=False),
        sa.Column("amount", CoinAmount(), nullable=False),
        sa.Column("average_cost", UnitPrice(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "coin_id", name="uq_positions_user_coin"),
    )
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("type", sa.String(4), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("coin_id", sa.String(128), nullable=False),
        sa.Column("amount", CoinAmount(), nullable=False),
        sa.Column("price_per_unit", UnitPrice(), nullable=False),
        sa.Column("total_value", Money(), nullable=False),
        sa.Column("fee", Money(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("seq", sa.Integer, nullable=False),
        sa.UniqueConstraint("user_id", "seq", name="uq_transactions_user_seq"),
    )
    op.create_index("ix_transactions_user_created", "transactions", ["user_id", "created_at"])
    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("position_id", sa.String(36), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("coin_id", sa.String(128), nullable=False),
        sa.Column("order_type", sa.String(16), nullable=False),
        sa.Column("trigger_price", UnitPrice(), nullable=False),
        sa.Column("amount", CoinAmount(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seq", sa.Integer, nullable=False),
        sa.UniqueConstraint("user_id", "seq", name="uq_orders_user_seq"),
    )
    op.create_index("ix_orders_user_status", "orders", ["user_id", "status"])


def downgrade() -> None:
    """Drop the ledger tables."""
    op.drop_index("ix_orders_user_status", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_transactions_user_created", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("positions")
    op.drop_table("wallets")
