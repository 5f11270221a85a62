"""Tests for storage repositories and the ledger store."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from chain_asset_indexer.storage.models import QueryRecordModel
from chain_asset_indexer.storage.repos import (
    BlockDTO,
    BlockRepository,
    DuplicateRecordError,
    QueryRecordDTO,
    StorageError,
    TokenTransferDTO,
    TransactionDTO,
    TransactionFilters,
    TransactionPage,
)

ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
TOKEN = "0xdac17f958d2ee523a2206206994597c13d831ec7"

# ============================================================================
# Fixtures
# ============================================================================


def _tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def make_block(number: int) -> BlockDTO:
    return BlockDTO(
        block_number=number,
        block_hash=_tx_hash(10_000 + number),
        timestamp=datetime(2026, 1, 1, tzinfo=UTC),
        transactions_count=0,
        gas_used=0,
        gas_limit=30_000_000,
        miner="0x" + "99" * 20,
    )


def make_tx(
    n: int,
    *,
    block_number: int = 1,
    tx_type: str = "native_transfer",
    from_address: str = ALICE,
    to_address: str | None = BOB,
) -> TransactionDTO:
    return TransactionDTO(
        tx_hash=_tx_hash(n),
        block_number=block_number,
        from_address=from_address,
        to_address=to_address,
        value="0.5",
        gas_limit=21_000,
        gas_price="0.00000002",
        gas_used=21_000,
        tx_type=tx_type,
        status="success",
    )


# ============================================================================
# Block tests
# ============================================================================


class TestBlocks:
    @pytest.mark.asyncio
    async def test_latest_height_empty_store(self, store) -> None:
        assert await store.latest_block_height() == 0

    @pytest.mark.asyncio
    async def test_latest_height_is_max(self, store) -> None:
        for number in (5, 9, 7):
            await store.save_block(make_block(number))
        assert await store.latest_block_height() == 9

    @pytest.mark.asyncio
    async def test_duplicate_height_rejected(self, store) -> None:
        await store.save_block(make_block(100))
        with pytest.raises(DuplicateRecordError):
            await store.save_block(make_block(100))

    @pytest.mark.asyncio
    async def test_get_by_number(self, store, session_factory) -> None:
        await store.save_block(make_block(42))
        async with session_factory() as session:
            found = await BlockRepository(session).get_by_number(42)
            missing = await BlockRepository(session).get_by_number(43)
        assert found is not None
        assert found.block_hash == _tx_hash(10_042)
        assert missing is None


# ============================================================================
# Transaction tests
# ============================================================================


class TestTransactions:
    @pytest.mark.asyncio
    async def test_duplicate_hash_rejected(self, store) -> None:
        await store.save_transaction(make_tx(1))
        with pytest.raises(DuplicateRecordError):
            await store.save_transaction(make_tx(1))

    @pytest.mark.asyncio
    async def test_duplicate_does_not_roll_back_earlier_rows(self, store) -> None:
        await store.save_transaction(make_tx(1))
        with pytest.raises(DuplicateRecordError):
            await store.save_transaction(make_tx(1))
        await store.save_transaction(make_tx(2))

        page = await store.query_transactions(TransactionFilters(), page=1, page_size=10)
        assert page.total == 2

    @pytest.mark.asyncio
    async def test_addresses_stored_lowercase(self, store) -> None:
        await store.save_transaction(make_tx(1, from_address=ALICE.upper().replace("0X", "0x")))
        page = await store.query_transactions(TransactionFilters(address=ALICE), page=1, page_size=10)
        assert page.transactions[0].from_address == ALICE

    @pytest.mark.asyncio
    async def test_contract_creation_has_no_recipient(self, store) -> None:
        await store.save_transaction(make_tx(1, tx_type="contract_call", to_address=None))
        page = await store.query_transactions(TransactionFilters(), page=1, page_size=10)
        assert page.transactions[0].to_address is None


class TestTransferRecords:
    @pytest.mark.asyncio
    async def test_listing_attaches_first_transfer_amount(self, store) -> None:
        await store.save_transaction(make_tx(1, tx_type="token_transfer", to_address=TOKEN))
        for amount in ("123456789012345678901234567890", "7"):
            await store.save_transfer(
                TokenTransferDTO(
                    tx_hash=_tx_hash(1),
                    from_address=ALICE,
                    to_address=BOB,
                    contract_address=TOKEN,
                    amount=amount,
                )
            )

        page = await store.query_transactions(TransactionFilters(), page=1, page_size=10)
        assert page.transactions[0].token_amount == "123456789012345678901234567890"

    @pytest.mark.asyncio
    async def test_missing_transfer_defaults_to_zero(self, store) -> None:
        await store.save_transaction(make_tx(1, tx_type="token_transfer"))
        await store.save_transaction(make_tx(2, tx_type="native_transfer"))

        page = await store.query_transactions(TransactionFilters(), page=1, page_size=10)
        amounts = {t.tx_type: t.token_amount for t in page.transactions}
        assert amounts == {"token_transfer": "0", "native_transfer": None}

    def test_duplicate_is_a_storage_error(self) -> None:
        assert issubclass(DuplicateRecordError, StorageError)


# ============================================================================
# Listing tests
# ============================================================================


class TestQueryTransactions:
    @pytest.mark.asyncio
    async def test_pagination(self, store) -> None:
        for n in range(25):
            await store.save_transaction(make_tx(n, block_number=n))

        first = await store.query_transactions(TransactionFilters(), page=1, page_size=10)
        third = await store.query_transactions(TransactionFilters(), page=3, page_size=10)

        assert first.total == 25
        assert first.pages == 3
        assert len(first.transactions) == 10
        assert len(third.transactions) == 5
        assert [t.block_number for t in third.transactions] == [4, 3, 2, 1, 0]

    @pytest.mark.asyncio
    async def test_newest_first(self, store) -> None:
        await store.save_transaction(make_tx(1, block_number=10))
        await store.save_transaction(make_tx(2, block_number=30))
        await store.save_transaction(make_tx(3, block_number=20))

        page = await store.query_transactions(TransactionFilters(), page=1, page_size=10)
        assert [t.block_number for t in page.transactions] == [30, 20, 10]

    @pytest.mark.asyncio
    async def test_filters_combine(self, store) -> None:
        carol = "0x" + "cc" * 20
        await store.save_transaction(make_tx(1, block_number=1, tx_type="native_transfer"))
        await store.save_transaction(make_tx(2, block_number=1, tx_type="contract_call"))
        await store.save_transaction(make_tx(3, block_number=2, tx_type="native_transfer"))
        await store.save_transaction(
            make_tx(4, block_number=1, tx_type="native_transfer", from_address=carol, to_address=carol)
        )

        by_type = await store.query_transactions(
            TransactionFilters(tx_type="native_transfer"), page=1, page_size=10
        )
        assert by_type.total == 3

        by_recipient = await store.query_transactions(
            TransactionFilters(address=BOB), page=1, page_size=10
        )
        assert by_recipient.total == 3

        combined = await store.query_transactions(
            TransactionFilters(tx_type="native_transfer", address=ALICE, block_number=1),
            page=1,
            page_size=10,
        )
        assert [t.tx_hash for t in combined.transactions] == [_tx_hash(1)]

    @pytest.mark.asyncio
    async def test_empty_result(self, store) -> None:
        page = await store.query_transactions(TransactionFilters(block_number=999), page=1, page_size=10)
        assert page.transactions == []
        assert page.total == 0
        assert page.pages == 0

    def test_pages_rounds_up(self) -> None:
        assert TransactionPage(transactions=[], total=11, page=1, page_size=10).pages == 2


# ============================================================================
# Query audit tests
# ============================================================================


class TestQueryAudit:
    @pytest.mark.asyncio
    async def test_records_are_appended(self, store, session_factory) -> None:
        await store.save_query_audit(QueryRecordDTO(query_type="eth_balance", address=ALICE))
        await store.save_query_audit(QueryRecordDTO(query_type="block", query_param="latest"))

        async with session_factory() as session:
            result = await session.execute(select(QueryRecordModel).order_by(QueryRecordModel.id))
            rows = result.scalars().all()

        assert [(r.query_type, r.address, r.query_param) for r in rows] == [
            ("eth_balance", ALICE, ""),
            ("block", None, "latest"),
        ]
