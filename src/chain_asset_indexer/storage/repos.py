"""Repository pattern implementations for data access.

This module provides data access abstractions for scanned blocks,
transactions, token transfers and the query audit trail, plus
`LedgerStore`, the session-per-operation facade used by the scanner and
the query service.
"""

from __future__ import annotations

import logging
import math
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from chain_asset_indexer.scanner.classifier import TxType
from chain_asset_indexer.storage.models import (
    BlockModel,
    QueryRecordModel,
    TokenTransferModel,
    TransactionModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

MISSING_TOKEN_AMOUNT = "0"


class StorageError(Exception):
    """Raised when a record cannot be persisted."""


class DuplicateRecordError(StorageError):
    """Raised when an insert violates a uniqueness constraint."""


@dataclass
class BlockDTO:
    """Data transfer object for scanned blocks."""

    block_number: int
    block_hash: str
    timestamp: datetime
    transactions_count: int
    gas_used: int
    gas_limit: int
    miner: str
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BlockModel) -> BlockDTO:
        return cls(
            block_number=model.block_number,
            block_hash=model.block_hash,
            timestamp=model.timestamp,
            transactions_count=model.transactions_count,
            gas_used=model.gas_used,
            gas_limit=model.gas_limit,
            miner=model.miner,
            created_at=model.created_at,
        )


@dataclass
class TransactionDTO:
    """Data transfer object for scanned transactions.

    ``token_amount`` is not persisted; listings fill it in for token
    transfers from the matching transfer record.
    """

    tx_hash: str
    block_number: int
    from_address: str
    to_address: str | None
    value: str
    gas_limit: int
    gas_price: str
    gas_used: int | None
    tx_type: str
    status: str
    created_at: datetime | None = None
    token_amount: str | None = None

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            from_address=model.from_address,
            to_address=model.to_address,
            value=model.value,
            gas_limit=model.gas_limit,
            gas_price=model.gas_price,
            gas_used=model.gas_used,
            tx_type=model.tx_type,
            status=model.status,
            created_at=model.created_at,
        )


@dataclass
class TokenTransferDTO:
    """Data transfer object for decoded Transfer events."""

    tx_hash: str
    from_address: str
    to_address: str
    contract_address: str
    amount: str
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TokenTransferModel) -> TokenTransferDTO:
        return cls(
            tx_hash=model.tx_hash,
            from_address=model.from_address,
            to_address=model.to_address,
            contract_address=model.contract_address,
            amount=model.amount,
            created_at=model.created_at,
        )


@dataclass
class QueryRecordDTO:
    """Data transfer object for query audit records."""

    query_type: str
    address: str | None = None
    query_param: str = ""
    created_at: datetime | None = None


@dataclass(frozen=True)
class TransactionFilters:
    """Optional listing filters; unset fields do not constrain the query."""

    tx_type: str | None = None
    address: str | None = None
    block_number: int | None = None


@dataclass
class TransactionPage:
    """One page of a filtered transaction listing."""

    transactions: list[TransactionDTO]
    total: int
    page: int
    page_size: int
    filters: TransactionFilters = field(default_factory=TransactionFilters)

    @property
    def pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total / self.page_size)


class BlockRepository:
    """Repository for scanned blocks."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_latest_block_number(self) -> int:
        """Highest scanned height, or 0 when nothing has been scanned."""
        result = await self.session.execute(select(sa.func.max(BlockModel.block_number)))
        latest = result.scalar_one_or_none()
        return int(latest) if latest is not None else 0

    async def get_by_number(self, block_number: int) -> BlockDTO | None:
        result = await self.session.execute(
            select(BlockModel).where(BlockModel.block_number == block_number)
        )
        model = result.scalar_one_or_none()
        return BlockDTO.from_model(model) if model else None

    async def insert(self, dto: BlockDTO) -> BlockDTO:
        model = BlockModel(
            block_number=dto.block_number,
            block_hash=dto.block_hash,
            timestamp=dto.timestamp,
            transactions_count=dto.transactions_count,
            gas_used=dto.gas_used,
            gas_limit=dto.gas_limit,
            miner=dto.miner.lower(),
        )
        self.session.add(model)
        await self.session.flush()
        return dto


class TransactionRepository:
    """Repository for scanned transactions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_hash(self, tx_hash: str) -> TransactionDTO | None:
        result = await self.session.execute(
            select(TransactionModel).where(TransactionModel.tx_hash == tx_hash.lower())
        )
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def insert(self, dto: TransactionDTO) -> TransactionDTO:
        model = TransactionModel(
            tx_hash=dto.tx_hash.lower(),
            block_number=dto.block_number,
            from_address=dto.from_address.lower(),
            to_address=dto.to_address.lower() if dto.to_address else None,
            value=dto.value,
            gas_limit=dto.gas_limit,
            gas_price=dto.gas_price,
            gas_used=dto.gas_used,
            tx_type=dto.tx_type,
            status=dto.status,
        )
        self.session.add(model)
        await self.session.flush()
        return dto

    @staticmethod
    def _apply_filters(stmt: sa.Select, filters: TransactionFilters) -> sa.Select:
        if filters.tx_type:
            stmt = stmt.where(TransactionModel.tx_type == filters.tx_type)
        if filters.address:
            address = filters.address.lower()
            stmt = stmt.where(
                sa.or_(
                    TransactionModel.from_address == address,
                    TransactionModel.to_address == address,
                )
            )
        if filters.block_number is not None:
            stmt = stmt.where(TransactionModel.block_number == filters.block_number)
        return stmt

    async def count(self, filters: TransactionFilters) -> int:
        stmt = self._apply_filters(select(sa.func.count(TransactionModel.id)), filters)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def list_page(
        self,
        filters: TransactionFilters,
        *,
        page: int,
        page_size: int,
    ) -> list[TransactionDTO]:
        """Newest-first page of transactions matching ``filters``."""
        stmt = (
            self._apply_filters(select(TransactionModel), filters)
            .order_by(TransactionModel.block_number.desc(), TransactionModel.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.session.execute(stmt)
        return [TransactionDTO.from_model(m) for m in result.scalars().all()]


class TokenTransferRepository:
    """Repository for decoded token transfers."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: TokenTransferDTO) -> TokenTransferDTO:
        model = TokenTransferModel(
            tx_hash=dto.tx_hash.lower(),
            from_address=dto.from_address.lower(),
            to_address=dto.to_address.lower(),
            contract_address=dto.contract_address.lower(),
            amount=dto.amount,
        )
        self.session.add(model)
        await self.session.flush()
        return dto

    async def list_by_tx_hashes(self, tx_hashes: Sequence[str]) -> list[TokenTransferDTO]:
        if not tx_hashes:
            return []
        result = await self.session.execute(
            select(TokenTransferModel)
            .where(TokenTransferModel.tx_hash.in_([h.lower() for h in tx_hashes]))
            .order_by(TokenTransferModel.id)
        )
        return [TokenTransferDTO.from_model(m) for m in result.scalars().all()]


class QueryRecordRepository:
    """Repository for the query audit trail (write-only)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: QueryRecordDTO) -> QueryRecordDTO:
        model = QueryRecordModel(
            address=dto.address,
            query_type=dto.query_type,
            query_param=dto.query_param,
        )
        if dto.created_at is not None:
            model.created_at = dto.created_at
        self.session.add(model)
        await self.session.flush()
        return dto


class LedgerStore:
    """Persistence facade: one short transaction per operation.

    Each insert commits on its own so a uniqueness violation on one record
    never rolls back records saved before it.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def latest_block_height(self) -> int:
        async with self._session() as session:
            return await BlockRepository(session).get_latest_block_number()

    async def save_block(self, dto: BlockDTO) -> None:
        try:
            async with self._session() as session:
                await BlockRepository(session).insert(dto)
        except IntegrityError as e:
            raise DuplicateRecordError(f"Block {dto.block_number} already stored") from e

    async def save_transaction(self, dto: TransactionDTO) -> None:
        try:
            async with self._session() as session:
                await TransactionRepository(session).insert(dto)
        except IntegrityError as e:
            raise DuplicateRecordError(f"Transaction {dto.tx_hash} already stored") from e

    async def save_transfer(self, dto: TokenTransferDTO) -> None:
        try:
            async with self._session() as session:
                await TokenTransferRepository(session).insert(dto)
        except IntegrityError as e:
            raise StorageError(
                f"Transfer for {dto.tx_hash} rejected by the database: {e.orig}"
            ) from e

    async def save_query_audit(self, dto: QueryRecordDTO) -> None:
        async with self._session() as session:
            await QueryRecordRepository(session).insert(dto)

    async def query_transactions(
        self,
        filters: TransactionFilters,
        *,
        page: int,
        page_size: int,
    ) -> TransactionPage:
        """Filtered, paginated, newest-first transaction listing.

        Token-transfer rows get ``token_amount`` from their first transfer
        record, or ``"0"`` when none was stored.
        """
        async with self._session() as session:
            tx_repo = TransactionRepository(session)
            total = await tx_repo.count(filters)
            transactions = await tx_repo.list_page(filters, page=page, page_size=page_size)

            token_hashes = [t.tx_hash for t in transactions if t.tx_type == TxType.TOKEN_TRANSFER]
            transfers = await TokenTransferRepository(session).list_by_tx_hashes(token_hashes)

        amounts: dict[str, str] = {}
        for transfer in transfers:
            amounts.setdefault(transfer.tx_hash, transfer.amount)
        for tx in transactions:
            if tx.tx_type == TxType.TOKEN_TRANSFER:
                tx.token_amount = amounts.get(tx.tx_hash) or MISSING_TOKEN_AMOUNT

        return TransactionPage(
            transactions=transactions,
            total=total,
            page=page,
            page_size=page_size,
            filters=filters,
        )
