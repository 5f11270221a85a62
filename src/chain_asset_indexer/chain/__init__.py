"""Chain access layer - RPC client, decoding and unit conversion."""

from chain_asset_indexer.chain.client import (
    ChainClient,
    ChainClientError,
    ContractCallError,
    EthereumClient,
    NotFoundError,
    RPCError,
)
from chain_asset_indexer.chain.signer import SenderRecoveryError, recover_sender
from chain_asset_indexer.chain.units import format_units, wei_to_ether, wei_to_gwei

__all__ = [
    "ChainClient",
    "ChainClientError",
    "ContractCallError",
    "EthereumClient",
    "NotFoundError",
    "RPCError",
    "SenderRecoveryError",
    "format_units",
    "recover_sender",
    "wei_to_ether",
    "wei_to_gwei",
]
