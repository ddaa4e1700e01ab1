"""
Chain access for deposit verification.
"""

from .rpc_client import ChainRpcClient, ReceiptLog, TransactionReceipt

__all__ = ["ChainRpcClient", "ReceiptLog", "TransactionReceipt"]
