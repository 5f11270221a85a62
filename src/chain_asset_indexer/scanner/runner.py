"""Sequential block scanner.

Walks a contiguous height range, persisting blocks, classified
transactions and decoded token transfers:
- The range is fixed at start: from the requested height (or one past the
  highest stored block) to the chain head fetched once
- Per-block and per-transaction failures are logged and skipped
- Cancellation is cooperative and checked at each block boundary
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from chain_asset_indexer.chain.decoding import to_hex
from chain_asset_indexer.chain.signer import recover_sender
from chain_asset_indexer.chain.units import wei_to_ether
from chain_asset_indexer.scanner.classifier import TxType, classify_transaction
from chain_asset_indexer.scanner.events import extract_token_transfers
from chain_asset_indexer.storage.repos import BlockDTO, TransactionDTO

if TYPE_CHECKING:
    from collections.abc import Mapping

    from chain_asset_indexer.chain.client import ChainClient
    from chain_asset_indexer.storage.repos import LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_DELAY_SECONDS = 0.1
DEFAULT_LOG_EVERY_BLOCKS = 100


class ScanError(RuntimeError):
    """Raised when the scan range cannot be established."""


class ScanState(str, Enum):
    """Scanner lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CancellationToken:
    """Explicit stop flag shared between a scan and whoever may stop it."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``, waking early on cancel.

        Returns:
            True if the token was cancelled.
        """
        if seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            pass
        return self.cancelled


@dataclass
class ScanResult:
    """Outcome of one scan run."""

    start_height: int
    end_height: int
    state: ScanState = ScanState.RUNNING
    blocks_scanned: int = 0
    transactions_saved: int = 0
    transfers_saved: int = 0
    failed_transactions: int = 0
    failed_heights: list[int] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None


class BlockScanner:
    """Scans blocks into the ledger store.

    A stopped scanner stays stopped; call `reset()` before reusing it.

    Example:
        ```python
        scanner = BlockScanner(client, store, block_delay_seconds=0.1)
        result = await scanner.start_scan(from_height=19_000_000)
        print(result.state, result.blocks_scanned)
        ```
    """

    def __init__(
        self,
        chain_client: ChainClient,
        store: LedgerStore,
        *,
        block_delay_seconds: float = DEFAULT_BLOCK_DELAY_SECONDS,
        log_every_blocks: int = DEFAULT_LOG_EVERY_BLOCKS,
    ) -> None:
        self._chain = chain_client
        self._store = store
        self._block_delay = block_delay_seconds
        self._log_every = max(1, log_every_blocks)

        self._state = ScanState.IDLE
        self._token = CancellationToken()
        self._cursor: int | None = None

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def cursor(self) -> int | None:
        """Next height to fetch while running, last attempted height after."""
        return self._cursor

    @property
    def token(self) -> CancellationToken:
        return self._token

    def stop(self) -> None:
        """Request a stop; the in-flight block finishes first."""
        logger.info("Stop requested for block scanner")
        self._token.cancel()

    def reset(self) -> None:
        """Clear a previous stop request so the scanner can run again."""
        if self._state == ScanState.RUNNING:
            raise RuntimeError("Cannot reset a running scanner")
        self._token = CancellationToken()
        self._state = ScanState.IDLE
        self._cursor = None

    async def _resolve_range(self, from_height: int | None) -> tuple[int, int]:
        if from_height is None or from_height <= 0:
            start = await self._store.latest_block_height() + 1
        else:
            start = from_height
        end = await self._chain.get_block_number()
        return start, end

    async def start_scan(self, from_height: int | None = None) -> ScanResult:
        """Scan from ``from_height`` (or the stored tip + 1) to the chain head.

        Raises:
            ScanError: If the start or end height cannot be resolved.
        """
        self._state = ScanState.RUNNING
        try:
            start, end = await self._resolve_range(from_height)
        except Exception as e:
            self._state = ScanState.FAILED
            logger.error("Failed to establish scan range: %s", e)
            raise ScanError(f"Failed to establish scan range: {e}") from e

        result = ScanResult(start_height=start, end_height=end)
        logger.info("Scanning blocks %d to %d", start, end)

        for height in range(start, end + 1):
            self._cursor = height
            if self._token.cancelled:
                result.state = ScanState.CANCELLED
                logger.info("Block scan stopped before block %d", height)
                break

            await self._scan_block(height, result)

            if result.blocks_scanned and result.blocks_scanned % self._log_every == 0:
                logger.info(
                    "Scan progress: height=%d/%d blocks=%d txs=%d transfers=%d failed_blocks=%d",
                    height,
                    end,
                    result.blocks_scanned,
                    result.transactions_saved,
                    result.transfers_saved,
                    len(result.failed_heights),
                )

            if height < end:
                await self._token.sleep(self._block_delay)
        else:
            result.state = ScanState.COMPLETED

        result.finished_at = datetime.now(UTC)
        self._state = result.state
        logger.info(
            "Block scan %s: blocks=%d txs=%d transfers=%d failed_blocks=%d failed_txs=%d",
            result.state.value,
            result.blocks_scanned,
            result.transactions_saved,
            result.transfers_saved,
            len(result.failed_heights),
            result.failed_transactions,
        )
        return result

    async def _scan_block(self, height: int, result: ScanResult) -> None:
        try:
            block = await self._chain.get_block(height, full_transactions=True)
        except Exception as e:
            logger.error("Failed to fetch block %d: %s", height, e)
            result.failed_heights.append(height)
            return

        transactions = list(block.get("transactions") or [])
        for tx in transactions:
            try:
                if isinstance(tx, (str, bytes)):
                    tx = await self._chain.get_transaction(to_hex(tx))
                result.transfers_saved += await self._process_transaction(tx, height)
                result.transactions_saved += 1
            except Exception as e:
                result.failed_transactions += 1
                logger.error(
                    "Failed to process transaction %s in block %d: %s",
                    _tx_label(tx),
                    height,
                    e,
                )

        try:
            await self._store.save_block(_block_record(height, block, len(transactions)))
        except Exception as e:
            logger.error("Failed to save block %d: %s", height, e)
            result.failed_heights.append(height)
            return

        result.blocks_scanned += 1
        logger.debug("Scanned block %d (%d txs)", height, len(transactions))

    async def _process_transaction(self, tx: Mapping[str, Any], height: int) -> int:
        """Persist one transaction; returns the number of transfers saved."""
        tx_hash = to_hex(tx["hash"])
        receipt = await self._chain.get_transaction_receipt(tx_hash)
        sender = recover_sender(await self._chain.get_raw_transaction(tx_hash))
        tx_type = classify_transaction(tx, receipt)

        recipient = tx.get("to")
        gas_price = tx.get("gasPrice") or receipt.get("effectiveGasPrice") or 0
        gas_used = receipt.get("gasUsed")

        await self._store.save_transaction(
            TransactionDTO(
                tx_hash=tx_hash,
                block_number=height,
                from_address=sender,
                to_address=to_hex(recipient) if recipient else None,
                value=wei_to_ether(int(tx.get("value") or 0)),
                gas_limit=int(tx.get("gas") or 0),
                gas_price=wei_to_ether(int(gas_price)),
                gas_used=int(gas_used) if gas_used is not None else None,
                tx_type=tx_type.value,
                status=receipt_status(receipt),
            )
        )

        if tx_type is not TxType.TOKEN_TRANSFER:
            return 0

        saved = 0
        for transfer in extract_token_transfers(tx_hash, receipt.get("logs") or []):
            try:
                await self._store.save_transfer(transfer)
                saved += 1
            except Exception as e:
                logger.error("Failed to save token transfer for %s: %s", tx_hash, e)
        return saved


def receipt_status(receipt: Mapping[str, Any]) -> str:
    return "success" if int(receipt.get("status") or 0) == 1 else "failed"


def _tx_label(tx: Any) -> str:
    try:
        return to_hex(tx["hash"]) if not isinstance(tx, (str, bytes)) else to_hex(tx)
    except Exception:
        return "<unknown>"


def _block_record(height: int, block: Mapping[str, Any], transactions_count: int) -> BlockDTO:
    return BlockDTO(
        block_number=height,
        block_hash=to_hex(block["hash"]),
        timestamp=datetime.fromtimestamp(int(block["timestamp"]), tz=UTC),
        transactions_count=transactions_count,
        gas_used=int(block.get("gasUsed") or 0),
        gas_limit=int(block.get("gasLimit") or 0),
        miner=to_hex(block.get("miner") or b"\x00" * 20),
    )
