"""Initial schema for blocks, transactions, token transfers and query records.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "blocks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("transactions_count", sa.Integer(), nullable=False),
        sa.Column("gas_used", sa.BigInteger(), nullable=False),
        sa.Column("gas_limit", sa.BigInteger(), nullable=False),
        sa.Column("miner", sa.String(42), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("block_number"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=True),
        sa.Column("value", sa.String(96), nullable=False),
        sa.Column("gas_limit", sa.BigInteger(), nullable=False),
        sa.Column("gas_price", sa.String(96), nullable=False),
        sa.Column("gas_used", sa.BigInteger(), nullable=True),
        sa.Column("tx_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(10), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash"),
    )
    op.create_index("idx_transactions_block_number", "transactions", ["block_number"])
    op.create_index("idx_transactions_from_address", "transactions", ["from_address"])
    op.create_index("idx_transactions_to_address", "transactions", ["to_address"])
    op.create_index("idx_transactions_tx_type", "transactions", ["tx_type"])

    op.create_table(
        "token_transfers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("amount", sa.String(96), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["tx_hash"], ["transactions.tx_hash"]),
    )
    op.create_index("idx_token_transfers_tx_hash", "token_transfers", ["tx_hash"])
    op.create_index("idx_token_transfers_contract", "token_transfers", ["contract_address"])

    op.create_table(
        "query_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("address", sa.String(64), nullable=True),
        sa.Column("query_type", sa.String(32), nullable=False),
        sa.Column("query_param", sa.String(128), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("query_records")

    op.drop_index("idx_token_transfers_contract", table_name="token_transfers")
    op.drop_index("idx_token_transfers_tx_hash", table_name="token_transfers")
    op.drop_table("token_transfers")

    op.drop_index("idx_transactions_tx_type", table_name="transactions")
    op.drop_index("idx_transactions_to_address", table_name="transactions")
    op.drop_index("idx_transactions_from_address", table_name="transactions")
    op.drop_index("idx_transactions_block_number", table_name="transactions")
    op.drop_table("transactions")

    op.drop_table("blocks")
