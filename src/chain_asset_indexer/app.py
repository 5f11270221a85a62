"""Application wiring for Chain Asset Indexer.

This module provides the LedgerApp class that owns the shared handles
(Redis, database, chain client) and exposes the rate-limited request
surface: balances, blocks, transactions, listings and scan submission.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from chain_asset_indexer.chain.client import EthereumClient
from chain_asset_indexer.config import Settings, get_settings
from chain_asset_indexer.query.service import AssetQueryService
from chain_asset_indexer.ratelimit import ClientRateLimiter
from chain_asset_indexer.scanner.jobs import ScanJobQueue
from chain_asset_indexer.scanner.runner import BlockScanner
from chain_asset_indexer.storage.database import DatabaseManager
from chain_asset_indexer.storage.repos import LedgerStore

if TYPE_CHECKING:
    from chain_asset_indexer.query.service import BlockInfo, TransactionDetail
    from chain_asset_indexer.scanner.jobs import ScanHandle
    from chain_asset_indexer.storage.repos import TransactionPage

logger = logging.getLogger(__name__)


class AppState(str, Enum):
    """Application lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class LedgerApp:
    """Owns the service handles and serves rate-limited requests.

    Every request method takes the caller identity first and is checked
    against the per-client limiter before any work is done.

    Example:
        ```python
        async with LedgerApp(get_settings()) as app:
            balance = await app.balance("127.0.0.1", "0x...")
            handle = app.scan("127.0.0.1", from_height=19_000_000)
            result = await handle.wait()
        ```
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._state = AppState.STOPPED

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._chain_client: EthereumClient | None = None
        self._store: LedgerStore | None = None
        self._query_service: AssetQueryService | None = None
        self._scan_jobs: ScanJobQueue | None = None

        rate = self._settings.rate_limit
        self._rate_limiter = ClientRateLimiter(
            requests_per_minute=rate.requests_per_minute,
            burst=rate.burst,
            max_clients=rate.max_clients,
        )

    @property
    def state(self) -> AppState:
        """Current application state."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == AppState.RUNNING

    @property
    def rate_limiter(self) -> ClientRateLimiter:
        return self._rate_limiter

    @property
    def db_manager(self) -> DatabaseManager | None:
        return self._db_manager

    async def start(self) -> None:
        """Create the shared handles.

        Raises:
            RuntimeError: If the app is already started.
        """
        if self._state != AppState.STOPPED:
            raise RuntimeError(f"Cannot start app in state {self._state}")

        self._state = AppState.STARTING
        logger.info("Starting chain asset indexer...")
        logger.debug("Settings: %s", self._settings.redacted_summary())

        try:
            self._initialize_components()
            self._state = AppState.RUNNING
            logger.info("Chain asset indexer started")
        except Exception as e:
            self._state = AppState.ERROR
            logger.error("Failed to start chain asset indexer: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop running scans and release connections."""
        if self._state == AppState.STOPPED:
            return

        self._state = AppState.STOPPING
        logger.info("Stopping chain asset indexer...")

        if self._scan_jobs:
            await self._scan_jobs.aclose()

        await self._cleanup()
        self._state = AppState.STOPPED
        logger.info("Chain asset indexer stopped")

    def _initialize_components(self) -> None:
        settings = self._settings

        logger.debug("Initializing Redis connection...")
        self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(
            settings.database.url,
            pool_size=settings.database.pool_size,
        )
        self._store = LedgerStore(self._db_manager.session_factory)

        logger.debug("Initializing Ethereum client...")
        self._chain_client = EthereumClient(
            settings.ethereum.rpc_url,
            fallback_rpc_url=settings.ethereum.fallback_rpc_url,
            max_requests_per_second=settings.ethereum.max_requests_per_second,
            max_retries=settings.ethereum.max_retries,
        )

        self._query_service = AssetQueryService(
            self._chain_client,
            cache=self._redis,
            store=self._store,
            cache_ttl_seconds=settings.redis.cache_ttl_seconds,
        )
        self._scan_jobs = ScanJobQueue(self._new_scanner)

    def _new_scanner(self) -> BlockScanner:
        assert self._chain_client is not None and self._store is not None
        return BlockScanner(
            self._chain_client,
            self._store,
            block_delay_seconds=self._settings.scanner.block_delay_seconds,
            log_every_blocks=self._settings.scanner.log_every_blocks,
        )

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._chain_client:
            await self._chain_client.aclose()
            self._chain_client = None

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        self._store = None
        self._query_service = None
        self._scan_jobs = None
        logger.debug("Resources cleaned up")

    def _require_running(self) -> None:
        if self._state != AppState.RUNNING:
            raise RuntimeError(f"App is not running (state={self._state.value})")

    @property
    def query_service(self) -> AssetQueryService:
        self._require_running()
        assert self._query_service is not None
        return self._query_service

    @property
    def scan_jobs(self) -> ScanJobQueue:
        self._require_running()
        assert self._scan_jobs is not None
        return self._scan_jobs

    async def balance(self, client_id: str, address: str) -> str:
        self._rate_limiter.check(client_id)
        return await self.query_service.get_native_balance(address)

    async def token_balance(self, client_id: str, address: str, contract_address: str) -> str:
        self._rate_limiter.check(client_id)
        return await self.query_service.get_token_balance(address, contract_address)

    async def transaction(self, client_id: str, tx_hash: str) -> TransactionDetail:
        self._rate_limiter.check(client_id)
        return await self.query_service.get_transaction_detail(tx_hash)

    async def block(self, client_id: str, block_ref: str | int) -> BlockInfo:
        self._rate_limiter.check(client_id)
        return await self.query_service.get_block_info(block_ref)

    def scan(self, client_id: str, from_height: int | None = None) -> ScanHandle:
        """Submit a background scan and return its handle without waiting."""
        self._rate_limiter.check(client_id)
        return self.scan_jobs.submit(from_height)

    async def transactions(self, client_id: str, **filters: Any) -> TransactionPage:
        """List scanned transactions.

        Accepts the keyword arguments of `AssetQueryService.list_transactions`.
        """
        self._rate_limiter.check(client_id)
        return await self.query_service.list_transactions(**filters)

    async def __aenter__(self) -> LedgerApp:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
