"""Cache-aside lookups over live chain state and scanned data.

Every lookup checks Redis first, falls back to the chain client on a miss
or cache error, writes the result back, and appends a query audit record.
Cache writes and audit writes never fail a read.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from chain_asset_indexer.chain.client import ChainClientError
from chain_asset_indexer.chain.decoding import to_hex
from chain_asset_indexer.chain.signer import recover_sender
from chain_asset_indexer.chain.units import wei_to_ether, wei_to_gwei
from chain_asset_indexer.scanner.classifier import TxType
from chain_asset_indexer.scanner.runner import receipt_status
from chain_asset_indexer.storage.repos import QueryRecordDTO, TransactionFilters

if TYPE_CHECKING:
    from chain_asset_indexer.chain.client import ChainClient
    from chain_asset_indexer.storage.repos import LedgerStore, TransactionPage

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

LATEST_BLOCK = "latest"
BLOCK_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

BALANCE_OF_SELECTOR = Web3.keccak(text="balanceOf(address)")[:4]

QUERY_TYPE_NATIVE_BALANCE = "eth_balance"
QUERY_TYPE_TOKEN_BALANCE = "erc20_balance"
QUERY_TYPE_BLOCK = "block"
QUERY_TYPE_TRANSACTION = "transaction"


class InvalidInputError(ValueError):
    """Raised for malformed addresses, hashes, heights or listing filters."""


class CacheStore(Protocol):
    """Key/value store with per-key expiry (satisfied by redis.asyncio.Redis)."""

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: str, ex: int | None = None) -> Any: ...


@dataclass
class BlockInfo:
    block_number: int
    hash: str
    timestamp: str  # local wall-clock
    transactions_count: int
    gas_used: int
    gas_limit: int
    miner: str


@dataclass
class TransactionDetail:
    tx_hash: str
    from_address: str
    to_address: str | None
    value_eth: str
    gas_used: int
    gas_price_gwei: str
    block_number: int
    status: str


def _normalize_address(value: str, *, field_name: str = "address") -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise InvalidInputError(f"Invalid {field_name}: {value!r}")
    return value.lower()


def _normalize_tx_hash(value: str) -> str:
    hexed = value if value.startswith(("0x", "0X")) else "0x" + value
    hexed = hexed.lower()
    if len(hexed) != 66 or any(c not in "0123456789abcdef" for c in hexed[2:]):
        raise InvalidInputError(f"Invalid transaction hash: {value!r}")
    return hexed


def parse_block_ref(block_ref: str | int) -> int | str:
    """Parse a block argument into a height or ``"latest"``."""
    if isinstance(block_ref, int):
        if block_ref < 0:
            raise InvalidInputError(f"Invalid block number: {block_ref}")
        return block_ref
    text = block_ref.strip()
    if text == LATEST_BLOCK:
        return LATEST_BLOCK
    if not (text.isascii() and text.isdigit()):
        raise InvalidInputError(f"Invalid block number: {block_ref!r} (use a height or 'latest')")
    return int(text)


class AssetQueryService:
    """Serves balance, block and transaction lookups.

    Example:
        ```python
        service = AssetQueryService(client, cache=redis, store=store)
        balance = await service.get_native_balance("0x...")
        block = await service.get_block_info("latest")
        ```
    """

    def __init__(
        self,
        chain_client: ChainClient,
        *,
        cache: CacheStore | None = None,
        store: LedgerStore | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ) -> None:
        self._client = chain_client
        self._cache = cache
        self._store = store
        self._cache_ttl = cache_ttl_seconds

    async def _get_cached(self, key: str) -> str | None:
        """Get a non-empty value from cache; errors count as a miss."""
        if not self._cache:
            return None
        try:
            value = await self._cache.get(key)
        except Exception as e:
            logger.warning("Cache get failed for %s: %s", key, e)
            return None
        if isinstance(value, bytes):
            value = value.decode()
        return str(value) if value else None

    async def _set_cached(self, key: str, value: str) -> None:
        if not self._cache:
            return
        try:
            await self._cache.set(key, value, ex=self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed for %s: %s", key, e)

    async def _audit(self, query_type: str, *, address: str | None, param: str = "") -> None:
        if not self._store:
            return
        try:
            await self._store.save_query_audit(
                QueryRecordDTO(
                    query_type=query_type,
                    address=address,
                    query_param=param,
                    created_at=datetime.now(UTC),
                )
            )
        except Exception as e:
            logger.error("Failed to save query record (%s, %s): %s", query_type, param, e)

    async def get_native_balance(self, address: str) -> str:
        """Latest native balance of ``address`` as an ether decimal string."""
        address = _normalize_address(address)
        cache_key = f"eth:balance:{address}"

        cached = await self._get_cached(cache_key)
        if cached is not None:
            logger.debug("Native balance cache hit: %s", address)
            return cached

        balance = wei_to_ether(await self._client.get_balance(address))
        await self._set_cached(cache_key, balance)
        await self._audit(QUERY_TYPE_NATIVE_BALANCE, address=address)
        return balance

    async def get_token_balance(self, address: str, contract_address: str) -> str:
        """Latest ERC20 balance in raw token units as a decimal string."""
        address = _normalize_address(address)
        contract_address = _normalize_address(contract_address, field_name="contract address")
        cache_key = f"erc20:balance:{contract_address}:{address}"

        cached = await self._get_cached(cache_key)
        if cached is not None:
            logger.debug("Token balance cache hit: %s on %s", address, contract_address)
            return cached

        call_data = BALANCE_OF_SELECTOR + abi_encode(["address"], [Web3.to_checksum_address(address)])
        result = await self._client.call_contract(contract_address, call_data)
        try:
            (units,) = abi_decode(["uint256"], result)
        except DecodingError as e:
            raise ChainClientError(
                f"balanceOf on {contract_address} returned undecodable data: {e}"
            ) from e

        balance = str(units)
        await self._set_cached(cache_key, balance)
        await self._audit(QUERY_TYPE_TOKEN_BALANCE, address=address, param=contract_address)
        return balance

    async def get_block_info(self, block_ref: str | int) -> BlockInfo:
        """Block summary by height or ``"latest"``."""
        identifier = parse_block_ref(block_ref)
        cache_key = f"block:{identifier}"

        cached = await self._get_cached(cache_key)
        if cached is not None:
            try:
                return BlockInfo(**json.loads(cached))
            except (TypeError, ValueError) as e:
                logger.warning("Failed to parse cached block %s: %s", identifier, e)

        block = await self._client.get_block(identifier)
        info = BlockInfo(
            block_number=int(block["number"]),
            hash=to_hex(block["hash"]),
            timestamp=datetime.fromtimestamp(int(block["timestamp"])).strftime(BLOCK_TIME_FORMAT),
            transactions_count=len(block.get("transactions") or []),
            gas_used=int(block.get("gasUsed") or 0),
            gas_limit=int(block.get("gasLimit") or 0),
            miner=to_hex(block["miner"]),
        )

        await self._set_cached(cache_key, json.dumps(dataclasses.asdict(info)))
        await self._audit(QUERY_TYPE_BLOCK, address=None, param=str(identifier))
        return info

    async def get_transaction_detail(self, tx_hash: str) -> TransactionDetail:
        """Mined transaction with recovered sender and receipt status.

        Raises:
            NotFoundError: If the transaction is unknown or still pending.
        """
        tx_hash = _normalize_tx_hash(tx_hash)
        cache_key = f"tx:{tx_hash}"

        cached = await self._get_cached(cache_key)
        if cached is not None:
            try:
                return TransactionDetail(**json.loads(cached))
            except (TypeError, ValueError) as e:
                logger.warning("Failed to parse cached transaction %s: %s", tx_hash, e)

        tx = await self._client.get_transaction(tx_hash)
        receipt = await self._client.get_transaction_receipt(tx_hash)
        sender = recover_sender(await self._client.get_raw_transaction(tx_hash))

        recipient = tx.get("to")
        detail = TransactionDetail(
            tx_hash=tx_hash,
            from_address=sender,
            to_address=to_hex(recipient) if recipient else None,
            value_eth=wei_to_ether(int(tx.get("value") or 0)),
            gas_used=int(receipt.get("gasUsed") or 0),
            gas_price_gwei=wei_to_gwei(int(tx.get("gasPrice") or 0)),
            block_number=int(receipt.get("blockNumber") or tx["blockNumber"]),
            status=receipt_status(receipt),
        )

        await self._set_cached(cache_key, json.dumps(dataclasses.asdict(detail)))
        await self._audit(QUERY_TYPE_TRANSACTION, address=sender, param=tx_hash)
        return detail

    async def list_transactions(
        self,
        *,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        tx_type: str | None = None,
        address: str | None = None,
        block_number: int | None = None,
    ) -> TransactionPage:
        """Newest-first page of scanned transactions.

        Out-of-range paging falls back to page 1 / size 10. Amounts are
        returned at full precision.
        """
        if self._store is None:
            raise RuntimeError("Transaction listing requires a ledger store")

        if page < 1:
            page = 1
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            page_size = DEFAULT_PAGE_SIZE

        if tx_type:
            try:
                tx_type = TxType(tx_type).value
            except ValueError as e:
                allowed = ", ".join(t.value for t in TxType)
                raise InvalidInputError(f"Invalid tx_type {tx_type!r}; expected one of {allowed}") from e
        if address:
            address = _normalize_address(address)
        if block_number is not None and block_number < 0:
            raise InvalidInputError(f"Invalid block number: {block_number}")

        filters = TransactionFilters(tx_type=tx_type or None, address=address or None, block_number=block_number)
        return await self._store.query_transactions(filters, page=page, page_size=page_size)
