"""SQLAlchemy models for persistent storage.

This module defines the database schema for scanned blocks, transactions,
token transfers and the query audit trail.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Decimal amounts are stored as text so no backend rounds them.
AMOUNT_LENGTH = 96


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class BlockModel(Base):
    """Scanned block headers, one row per height."""

    __tablename__ = "blocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    transactions_count: Mapped[int] = mapped_column(Integer, nullable=False)
    gas_used: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gas_limit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    miner: Mapped[str] = mapped_column(String(42), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class TransactionModel(Base):
    """Scanned transactions with their classification."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    # Contract creations have no recipient.
    to_address: Mapped[str | None] = mapped_column(String(42), nullable=True)

    value: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)  # ether
    gas_limit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gas_price: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)  # ether
    gas_used: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    tx_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False)  # success|failed

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_transactions_block_number", "block_number"),
        Index("idx_transactions_from_address", "from_address"),
        Index("idx_transactions_to_address", "to_address"),
        Index("idx_transactions_tx_type", "tx_type"),
    )


class TokenTransferModel(Base):
    """Decoded ERC20 Transfer events; a transaction may emit several."""

    __tablename__ = "token_transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(
        String(66), ForeignKey("transactions.tx_hash"), nullable=False
    )
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)

    # Raw token units as emitted by the Transfer event (uint256).
    amount: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_token_transfers_tx_hash", "tx_hash"),
        Index("idx_token_transfers_contract", "contract_address"),
    )


class QueryRecordModel(Base):
    """Append-only audit trail of served lookups."""

    __tablename__ = "query_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    query_type: Mapped[str] = mapped_column(String(32), nullable=False)
    query_param: Mapped[str] = mapped_column(String(128), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
