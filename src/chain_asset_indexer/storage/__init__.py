"""Storage layer - Database schemas and repositories."""

from chain_asset_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from chain_asset_indexer.storage.models import (
    Base,
    BlockModel,
    QueryRecordModel,
    TokenTransferModel,
    TransactionModel,
)
from chain_asset_indexer.storage.repos import (
    BlockDTO,
    DuplicateRecordError,
    LedgerStore,
    QueryRecordDTO,
    StorageError,
    TokenTransferDTO,
    TransactionDTO,
    TransactionFilters,
    TransactionPage,
)

__all__ = [
    "Base",
    "BlockDTO",
    "BlockModel",
    "DatabaseManager",
    "DuplicateRecordError",
    "LedgerStore",
    "QueryRecordDTO",
    "QueryRecordModel",
    "StorageError",
    "TokenTransferDTO",
    "TokenTransferModel",
    "TransactionDTO",
    "TransactionFilters",
    "TransactionModel",
    "TransactionPage",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
