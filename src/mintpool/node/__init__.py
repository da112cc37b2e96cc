"""
Node Integration Layer.

Provides abstracted access to the EVM chain: nonces, fees, gas estimation,
raw transaction broadcast and receipts.
"""

from mintpool.node.interface import ChainInterface, FeeEstimate, LogEntry, Receipt
from mintpool.node.web3_rpc import Web3Adapter

__all__ = [
    "ChainInterface",
    "FeeEstimate",
    "LogEntry",
    "Receipt",
    "Web3Adapter",
]
