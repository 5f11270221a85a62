"""Pytest configuration and fixtures."""

from __future__ import annotations

from typing import Any

import pytest
from eth_account import Account
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from chain_asset_indexer.storage.models import Base
from chain_asset_indexer.storage.repos import LedgerStore

SENDER_KEY = "0x" + "11" * 32
RECIPIENT_KEY = "0x" + "22" * 32
TOKEN_CONTRACT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"


@pytest.fixture
def sender() -> Any:
    """Local account that signs test transactions."""
    return Account.from_key(SENDER_KEY)


@pytest.fixture
def sender_key() -> str:
    return SENDER_KEY


@pytest.fixture
def token_contract() -> str:
    return TOKEN_CONTRACT


@pytest.fixture
def recipient_address() -> str:
    return Account.from_key(RECIPIENT_KEY).address


@pytest.fixture
async def session_factory():
    """In-memory SQLite session factory shared across sessions."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def store(session_factory) -> LedgerStore:
    return LedgerStore(session_factory)


def _sign_transaction(
    nonce: int,
    to: str,
    *,
    value: int = 0,
    data: bytes = b"",
    gas: int = 21_000,
    gas_price: int = 2_000_000_000,
    chain_id: int = 1,
    key: str = SENDER_KEY,
) -> Any:
    """Sign a legacy transaction; returns eth-account's SignedTransaction."""
    return Account.sign_transaction(
        {
            "nonce": nonce,
            "to": to,
            "value": value,
            "data": data,
            "gas": gas,
            "gasPrice": gas_price,
            "chainId": chain_id,
        },
        key,
    )


@pytest.fixture
def sign_tx():
    """Factory fixture: `sign_tx(nonce, to, **fields)` -> SignedTransaction."""
    return _sign_transaction

