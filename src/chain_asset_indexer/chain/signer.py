"""Sender recovery for signed transactions."""

from __future__ import annotations

from typing import Any

from eth_account import Account

from chain_asset_indexer.chain.decoding import DecodeError, to_bytes


class SenderRecoveryError(Exception):
    """Raised when the sender cannot be recovered from a signed transaction."""


def recover_sender(raw_transaction: Any) -> str:
    """Recover the lowercase sender address from a signed raw transaction.

    Typed envelopes carry their own chain ID. Legacy transactions are
    recovered with the EIP-155 chain ID encoded in ``v`` when present,
    otherwise with the pre-EIP-155 (Homestead) scheme.
    """
    try:
        raw = to_bytes(raw_transaction)
    except DecodeError as e:
        raise SenderRecoveryError(str(e)) from e
    if not raw:
        raise SenderRecoveryError("Empty raw transaction")

    try:
        sender = Account.recover_transaction(raw)
    except Exception as e:
        raise SenderRecoveryError(f"Signature recovery failed: {e}") from e
    return str(sender).lower()
