"""ERC20 Transfer event extraction from receipt logs."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from chain_asset_indexer.chain.decoding import (
    WORD_SIZE,
    DecodeError,
    decode_topic_address,
    decode_uint,
    to_bytes,
    to_hex,
)
from chain_asset_indexer.scanner.classifier import is_transfer_log
from chain_asset_indexer.storage.repos import TokenTransferDTO

logger = logging.getLogger(__name__)

# Transfer(address indexed from, address indexed to, uint256 value)
TRANSFER_TOPIC_COUNT = 3


def decode_transfer_log(tx_hash: str, log: Mapping[str, Any]) -> TokenTransferDTO | None:
    """Decode one log into a transfer record.

    Returns None for logs that are not ERC20 Transfers (wrong signature,
    ERC721-style 4 topics) and for amounts shorter than one word.

    Raises:
        DecodeError: If a matching log has malformed topics or data.
    """
    topics = log.get("topics") or []
    if len(topics) != TRANSFER_TOPIC_COUNT or not is_transfer_log(log):
        return None

    data = to_bytes(log.get("data") or b"")
    if len(data) < WORD_SIZE:
        return None

    return TokenTransferDTO(
        tx_hash=tx_hash.lower(),
        from_address=decode_topic_address(topics[1]),
        to_address=decode_topic_address(topics[2]),
        contract_address=to_hex(log["address"]),
        amount=str(decode_uint(data, 0, WORD_SIZE)),
    )


def extract_token_transfers(
    tx_hash: str, logs: Iterable[Mapping[str, Any]]
) -> list[TokenTransferDTO]:
    """Decode every ERC20 Transfer in ``logs``, skipping undecodable entries."""
    transfers: list[TokenTransferDTO] = []
    for index, log in enumerate(logs):
        try:
            transfer = decode_transfer_log(tx_hash, log)
        except (DecodeError, KeyError) as e:
            logger.warning("Skipping undecodable log %d of %s: %s", index, tx_hash, e)
            continue
        if transfer is not None:
            transfers.append(transfer)
    return transfers
