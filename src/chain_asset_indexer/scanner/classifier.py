"""Transaction classification.

Categories, checked in order:
1. No input payload -> native transfer.
2. Any receipt log whose first topic is the ERC20 Transfer signature ->
   token transfer.
3. Anything else -> contract call.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any

from web3 import Web3

from chain_asset_indexer.chain.decoding import DecodeError, to_bytes, to_hex

# ERC20 Transfer(address,address,uint256)
TRANSFER_EVENT_TOPIC = to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))


class TxType(str, Enum):
    """Closed set of transaction categories."""

    NATIVE_TRANSFER = "native_transfer"
    TOKEN_TRANSFER = "token_transfer"
    CONTRACT_CALL = "contract_call"


def has_input(tx: Mapping[str, Any]) -> bool:
    payload = tx.get("input") or tx.get("data") or b""
    try:
        return len(to_bytes(payload)) > 0
    except DecodeError:
        return True


def is_transfer_log(log: Mapping[str, Any]) -> bool:
    """True when the log's first topic is the Transfer signature."""
    topics: Sequence[Any] = log.get("topics") or []
    if not topics:
        return False
    try:
        return to_hex(topics[0]) == TRANSFER_EVENT_TOPIC
    except DecodeError:
        return False


def classify_transaction(tx: Mapping[str, Any], receipt: Mapping[str, Any]) -> TxType:
    if not has_input(tx):
        return TxType.NATIVE_TRANSFER
    if any(is_transfer_log(log) for log in receipt.get("logs") or []):
        return TxType.TOKEN_TRANSFER
    return TxType.CONTRACT_CALL
