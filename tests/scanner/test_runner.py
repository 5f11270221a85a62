"""Tests for the sequential block scanner."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from hexbytes import HexBytes
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from chain_asset_indexer.chain.client import NotFoundError, RPCError
from chain_asset_indexer.scanner.classifier import TRANSFER_EVENT_TOPIC, TxType
from chain_asset_indexer.scanner.runner import BlockScanner, ScanError, ScanState
from chain_asset_indexer.storage.models import BlockModel, TokenTransferModel, TransactionModel
from chain_asset_indexer.storage.repos import TransactionFilters


class FakeChain:
    """In-memory ChainClient serving pre-built blocks."""

    def __init__(self, head: int) -> None:
        self.head = head
        self.blocks: dict[int, dict[str, Any]] = {}
        self.receipts: dict[str, dict[str, Any]] = {}
        self.raw: dict[str, bytes] = {}
        self.on_block_fetched: Callable[[int], None] | None = None
        self.fetched: list[int] = []

    def add_block(self, height: int, txs: list[tuple[Any, dict[str, Any], dict[str, Any]]] = ()) -> None:
        """Add a block of ``(signed, tx_fields, receipt)`` triples."""
        transactions = []
        for signed, fields, receipt in txs:
            tx_hash = HexBytes(signed.hash)
            transactions.append({"hash": tx_hash, "blockNumber": height, **fields})
            self.receipts[tx_hash.to_0x_hex()] = {"blockNumber": height, **receipt}
            self.raw[tx_hash.to_0x_hex()] = bytes(signed.raw_transaction)
        self.blocks[height] = {
            "number": height,
            "hash": HexBytes(height.to_bytes(32, "big")),
            "timestamp": 1_700_000_000 + height * 12,
            "transactions": transactions,
            "gasUsed": 21_000 * len(transactions),
            "gasLimit": 30_000_000,
            "miner": "0x" + "99" * 20,
        }

    async def get_block_number(self) -> int:
        return self.head

    async def get_block(self, block_identifier: Any, *, full_transactions: bool = False) -> dict:
        height = self.head if block_identifier == "latest" else block_identifier
        if height not in self.blocks:
            raise NotFoundError(f"block {height}")
        self.fetched.append(height)
        if self.on_block_fetched:
            self.on_block_fetched(height)
        return self.blocks[height]

    async def get_transaction(self, tx_hash: str) -> dict:
        raise NotImplementedError

    async def get_transaction_receipt(self, tx_hash: str) -> dict:
        return self.receipts[tx_hash]

    async def get_raw_transaction(self, tx_hash: str) -> bytes:
        return self.raw[tx_hash]

    async def get_balance(self, address: str) -> int:
        raise NotImplementedError

    async def call_contract(self, to: str, data: bytes) -> bytes:
        raise NotImplementedError


def native_tx(signed: Any, to: str, value: int) -> tuple[Any, dict, dict]:
    fields = {"to": to, "value": value, "input": HexBytes(b""), "gas": 21_000, "gasPrice": 2_000_000_000}
    return signed, fields, {"status": 1, "gasUsed": 21_000, "logs": []}


def token_tx(signed: Any, contract: str, sender: str, receiver: str, amount: int) -> tuple[Any, dict, dict]:
    fields = {
        "to": contract,
        "value": 0,
        "input": HexBytes("0xa9059cbb"),
        "gas": 60_000,
        "gasPrice": 2_000_000_000,
    }
    log = {
        "address": contract,
        "topics": [
            HexBytes(TRANSFER_EVENT_TOPIC),
            HexBytes(b"\x00" * 12 + bytes.fromhex(sender[2:])),
            HexBytes(b"\x00" * 12 + bytes.fromhex(receiver[2:])),
        ],
        "data": HexBytes(amount.to_bytes(32, "big")),
    }
    return signed, fields, {"status": 1, "gasUsed": 51_000, "logs": [log]}


def empty_chain(start: int, end: int) -> FakeChain:
    chain = FakeChain(head=end)
    for height in range(start, end + 1):
        chain.add_block(height)
    return chain


async def _block_numbers(session_factory) -> list[int]:
    async with session_factory() as session:
        result = await session.execute(select(BlockModel.block_number).order_by(BlockModel.id))
        return list(result.scalars().all())


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return int(result.scalar_one())


class TestBlockScannerRange:
    @pytest.mark.asyncio
    async def test_scans_range_in_ascending_order(self, store, session_factory) -> None:
        scanner = BlockScanner(empty_chain(100, 102), store, block_delay_seconds=0)

        result = await scanner.start_scan(100)

        assert result.state is ScanState.COMPLETED
        assert (result.start_height, result.end_height) == (100, 102)
        assert result.blocks_scanned == 3
        assert result.failed_heights == []
        assert await _block_numbers(session_factory) == [100, 101, 102]
        assert scanner.state is ScanState.COMPLETED

    @pytest.mark.asyncio
    async def test_defaults_to_stored_tip_plus_one(self, store, session_factory) -> None:
        chain = empty_chain(1, 5)
        await BlockScanner(chain, store, block_delay_seconds=0).start_scan(1)
        chain.head = 7
        chain.add_block(6)
        chain.add_block(7)
        chain.fetched.clear()

        result = await BlockScanner(chain, store, block_delay_seconds=0).start_scan()

        assert chain.fetched == [6, 7]
        assert result.start_height == 6
        assert await _block_numbers(session_factory) == [1, 2, 3, 4, 5, 6, 7]

    @pytest.mark.asyncio
    async def test_non_positive_start_uses_stored_tip(self, store) -> None:
        result = await BlockScanner(empty_chain(1, 2), store, block_delay_seconds=0).start_scan(0)
        assert result.start_height == 1
        assert result.blocks_scanned == 2

    @pytest.mark.asyncio
    async def test_start_past_head_scans_nothing(self, store) -> None:
        result = await BlockScanner(empty_chain(1, 3), store, block_delay_seconds=0).start_scan(10)
        assert result.state is ScanState.COMPLETED
        assert result.blocks_scanned == 0

    @pytest.mark.asyncio
    async def test_rescan_reports_duplicate_heights(self, store, session_factory) -> None:
        chain = empty_chain(100, 102)
        await BlockScanner(chain, store, block_delay_seconds=0).start_scan(100)

        result = await BlockScanner(chain, store, block_delay_seconds=0).start_scan(100)

        assert result.state is ScanState.COMPLETED
        assert result.blocks_scanned == 0
        assert result.failed_heights == [100, 101, 102]
        assert await _block_numbers(session_factory) == [100, 101, 102]

    @pytest.mark.asyncio
    async def test_missing_block_is_skipped(self, store, session_factory) -> None:
        chain = empty_chain(1, 3)
        del chain.blocks[2]

        result = await BlockScanner(chain, store, block_delay_seconds=0).start_scan(1)

        assert result.failed_heights == [2]
        assert await _block_numbers(session_factory) == [1, 3]

    @pytest.mark.asyncio
    async def test_range_failure_raises_scan_error(self, store) -> None:
        chain = empty_chain(1, 1)

        async def boom() -> int:
            raise RPCError("node down")

        chain.get_block_number = boom  # type: ignore[method-assign]
        scanner = BlockScanner(chain, store, block_delay_seconds=0)

        with pytest.raises(ScanError):
            await scanner.start_scan(1)
        assert scanner.state is ScanState.FAILED
        assert chain.fetched == []


class TestBlockScannerCancellation:
    @pytest.mark.asyncio
    async def test_stop_finishes_in_flight_block(self, store, session_factory) -> None:
        chain = empty_chain(100, 110)
        scanner = BlockScanner(chain, store, block_delay_seconds=0)

        def stop_at_103(height: int) -> None:
            if height == 103:
                scanner.stop()

        chain.on_block_fetched = stop_at_103
        result = await scanner.start_scan(100)

        assert result.state is ScanState.CANCELLED
        assert await _block_numbers(session_factory) == [100, 101, 102, 103]
        assert chain.fetched == [100, 101, 102, 103]
        assert scanner.cursor == 104

    @pytest.mark.asyncio
    async def test_stop_during_delay_wakes_scanner(self, store, session_factory) -> None:
        chain = empty_chain(1, 3)
        scanner = BlockScanner(chain, store, block_delay_seconds=30)
        chain.on_block_fetched = lambda height: scanner.stop()

        result = await scanner.start_scan(1)

        assert result.state is ScanState.CANCELLED
        assert await _block_numbers(session_factory) == [1]

    @pytest.mark.asyncio
    async def test_stopped_scanner_stays_stopped_until_reset(self, store) -> None:
        scanner = BlockScanner(empty_chain(1, 2), store, block_delay_seconds=0)
        scanner.stop()

        result = await scanner.start_scan(1)
        assert result.state is ScanState.CANCELLED
        assert result.blocks_scanned == 0

        scanner.reset()
        result = await scanner.start_scan(1)
        assert result.state is ScanState.COMPLETED
        assert result.blocks_scanned == 2


class TestBlockScannerTransactions:
    @pytest.mark.asyncio
    async def test_persists_classified_transactions(
        self, store, session_factory, sender, recipient_address, token_contract, sign_tx
    ) -> None:
        native = sign_tx(0, recipient_address, value=10**18)
        token = sign_tx(1, token_contract, data=bytes.fromhex("a9059cbb"), gas=60_000)
        chain = FakeChain(head=5)
        chain.add_block(
            5,
            [
                native_tx(native, recipient_address, 10**18),
                token_tx(token, token_contract, sender.address, recipient_address, 2_500_000),
            ],
        )

        result = await BlockScanner(chain, store, block_delay_seconds=0).start_scan(5)

        assert result.transactions_saved == 2
        assert result.transfers_saved == 1
        assert result.failed_transactions == 0

        page = await store.query_transactions(TransactionFilters(), page=1, page_size=10)
        by_type = {t.tx_type: t for t in page.transactions}
        native_row = by_type[TxType.NATIVE_TRANSFER.value]
        assert native_row.from_address == sender.address.lower()
        assert native_row.to_address == recipient_address.lower()
        assert native_row.value == "1"
        assert native_row.gas_price == "0.000000002"
        assert native_row.status == "success"

        token_row = by_type[TxType.TOKEN_TRANSFER.value]
        assert token_row.token_amount == "2500000"
        assert await _count(session_factory, TokenTransferModel) == 1

    @pytest.mark.asyncio
    async def test_bad_transaction_does_not_abort_block(
        self, store, session_factory, recipient_address, sign_tx
    ) -> None:
        good = sign_tx(0, recipient_address, value=1)
        bad = sign_tx(1, recipient_address, value=2)
        chain = FakeChain(head=1)
        chain.add_block(1, [native_tx(bad, recipient_address, 2), native_tx(good, recipient_address, 1)])
        chain.raw[HexBytes(bad.hash).to_0x_hex()] = b""

        result = await BlockScanner(chain, store, block_delay_seconds=0).start_scan(1)

        assert result.failed_transactions == 1
        assert result.transactions_saved == 1
        assert result.blocks_scanned == 1
        assert await _count(session_factory, TransactionModel) == 1

    @pytest.mark.asyncio
    async def test_transfer_save_error_skips_only_that_transfer(
        self, store, session_factory, sender, recipient_address, token_contract, sign_tx, monkeypatch
    ) -> None:
        token = sign_tx(0, token_contract, data=bytes.fromhex("a9059cbb"), gas=60_000)
        signed, fields, receipt = token_tx(token, token_contract, sender.address, recipient_address, 7)
        second_log = dict(receipt["logs"][0], data=HexBytes((9).to_bytes(32, "big")))
        receipt["logs"].append(second_log)
        chain = FakeChain(head=1)
        chain.add_block(1, [(signed, fields, receipt)])

        save_transfer = store.save_transfer
        calls = 0

        async def flaky_save_transfer(transfer):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return await save_transfer(transfer)

        monkeypatch.setattr(store, "save_transfer", flaky_save_transfer)

        result = await BlockScanner(chain, store, block_delay_seconds=0).start_scan(1)

        assert result.transactions_saved == 1
        assert result.failed_transactions == 0
        assert result.transfers_saved == 1
        assert await _count(session_factory, TokenTransferModel) == 1
