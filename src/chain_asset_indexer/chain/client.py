"""Ethereum JSON-RPC client with retries, failover and throttling.

This module provides read-only ledger access for the scanner and the
query service:
- `ChainClient` protocol: the interface the core depends on
- `EthereumClient`: AsyncWeb3-backed implementation with
  exponential-backoff retries, failover to a secondary RPC URL and an
  outbound token-bucket throttle
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Literal, Protocol

from web3 import AsyncWeb3
from web3.exceptions import (
    BlockNotFound,
    ContractLogicError,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from chain_asset_indexer.chain.decoding import to_bytes
from chain_asset_indexer.ratelimit import TokenBucket

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30

BlockIdentifier = int | Literal["latest"]

_RETRYABLE_ERRORS = (Web3Exception, OSError, TimeoutError)


def _is_execution_error(error: Exception) -> bool:
    if isinstance(error, ContractLogicError):
        return True
    return isinstance(error, Web3RPCError) and "revert" in str(error).lower()


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when the node cannot be reached or keeps failing."""


class NotFoundError(ChainClientError):
    """Raised when a block or transaction is unknown or still pending."""


class ContractCallError(ChainClientError):
    """Raised when a contract call reverts or is rejected by the node."""


class ChainClient(Protocol):
    """Read-only ledger access used by the scanner and query service."""

    async def get_block_number(self) -> int: ...

    async def get_block(
        self, block_identifier: BlockIdentifier, *, full_transactions: bool = False
    ) -> dict[str, Any]: ...

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]: ...

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]: ...

    async def get_raw_transaction(self, tx_hash: str) -> bytes: ...

    async def get_balance(self, address: str) -> int: ...

    async def call_contract(self, to: str, data: bytes) -> bytes: ...


class EthereumClient:
    """Ethereum JSON-RPC client.

    Example:
        ```python
        client = EthereumClient(
            "http://localhost:8545",
            fallback_rpc_url="https://ethereum-rpc.publicnode.com",
        )
        head = await client.get_block_number()
        block = await client.get_block(head, full_transactions=True)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout: int = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize the client.

        Args:
            rpc_url: Primary JSON-RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            request_timeout: HTTP request timeout in seconds.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._request_timeout = request_timeout

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = TokenBucket.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0  # Try primary again after 60s

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": self._request_timeout})
        )
        self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        # Harmless on mainnet; required to decode blocks from PoA testnets.
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    def _should_try_primary(self) -> bool:
        """Check if we should try the primary RPC."""
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_with_retries(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        *args: Any,
        **kwargs: Any,
    ) -> tuple[bool, Any, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                method = getattr(w3.eth, func_name)
                return True, await method(*args, **kwargs), None
            except (TransactionNotFound, BlockNotFound) as e:
                raise NotFoundError(str(e)) from e
            except _RETRYABLE_ERRORS as e:
                if _is_execution_error(e):
                    raise ContractCallError(
                        f"{func_name} rejected by {label.lower()} node: {e}"
                    ) from e
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        return False, None, last_error

    async def _execute_with_retry(self, func_name: str, *args: Any, **kwargs: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Args:
            func_name: Name of the web3.eth method to call.
            *args: Positional arguments for the method.
            **kwargs: Keyword arguments for the method.

        Returns:
            Result from the RPC call.

        Raises:
            NotFoundError: If the node reports the block/transaction unknown.
            ContractCallError: If the node rejects a call as reverted.
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._call_with_retries(
                self._w3, "Primary", func_name, *args, **kwargs
            )
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, fallback_error = await self._call_with_retries(
                self._w3_fallback, "Fallback", func_name, *args, **kwargs
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = fallback_error or last_error

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_block_number(self) -> int:
        """Get the current chain head height."""
        header = await self._execute_with_retry("get_block", "latest")
        return int(header["number"])

    async def get_block(
        self,
        block_identifier: BlockIdentifier,
        *,
        full_transactions: bool = False,
    ) -> dict[str, Any]:
        """Get a block by height or ``"latest"``."""
        if isinstance(block_identifier, int) and block_identifier < 0:
            raise ValueError("block number must be >= 0")
        block = await self._execute_with_retry(
            "get_block", block_identifier, full_transactions=full_transactions
        )
        return dict(block)

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        """Get a mined transaction by hash.

        Raises:
            NotFoundError: If the transaction is unknown or still pending.
        """
        tx = await self._execute_with_retry("get_transaction", tx_hash)
        if tx.get("blockNumber") is None:
            raise NotFoundError(f"Transaction {tx_hash} is pending and not yet in a block")
        return dict(tx)

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        """Get the receipt of a mined transaction."""
        receipt = await self._execute_with_retry("get_transaction_receipt", tx_hash)
        return dict(receipt)

    async def get_raw_transaction(self, tx_hash: str) -> bytes:
        """Get the signed RLP/typed-envelope bytes of a transaction."""
        raw = await self._execute_with_retry("get_raw_transaction", tx_hash)
        return to_bytes(raw)

    async def get_balance(self, address: str) -> int:
        """Get the latest native balance of ``address`` in wei."""
        balance = await self._execute_with_retry(
            "get_balance", AsyncWeb3.to_checksum_address(address)
        )
        return int(balance)

    async def call_contract(self, to: str, data: bytes) -> bytes:
        """Execute a read-only contract call against the latest block."""
        result = await self._execute_with_retry(
            "call",
            {"to": AsyncWeb3.to_checksum_address(to), "data": AsyncWeb3.to_hex(data)},
        )
        return to_bytes(result)

    async def health_check(self) -> bool:
        """Check if the client can reach the RPC node."""
        try:
            await self.get_block_number()
            return True
        except ChainClientError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
