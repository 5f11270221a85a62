"""Query layer - cache-aside balance, block and transaction lookups."""

from chain_asset_indexer.query.service import (
    AssetQueryService,
    BlockInfo,
    CacheStore,
    InvalidInputError,
    TransactionDetail,
)

__all__ = [
    "AssetQueryService",
    "BlockInfo",
    "CacheStore",
    "InvalidInputError",
    "TransactionDetail",
]
