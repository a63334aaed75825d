"""Chain access layer - RPC and block explorer clients."""

from escrow_token_discovery.chain.client import (
    ChainClient,
    ChainClientError,
    LogRangeLimitError,
    RPCError,
)
from escrow_token_discovery.chain.explorer import BlockExplorerClient, BlockExplorerError

__all__ = [
    "BlockExplorerClient",
    "BlockExplorerError",
    "ChainClient",
    "ChainClientError",
    "LogRangeLimitError",
    "RPCError",
]
