"""
Deposit verification and crediting.

- verifier: receipt checks against the token contract and treasury.
- pipeline: gate sequence ending in the atomic record-and-credit step.
"""

from .pipeline import DepositAttempt, DepositPipeline, DepositReceipt, DepositState
from .verifier import (
    TRANSFER_EVENT_SIGNATURE,
    DepositVerifier,
    VerifiedTransfer,
    normalize_reference,
    scale_amount,
    topic_to_address,
)

__all__ = [
    "TRANSFER_EVENT_SIGNATURE",
    "DepositAttempt",
    "DepositPipeline",
    "DepositReceipt",
    "DepositState",
    "DepositVerifier",
    "VerifiedTransfer",
    "normalize_reference",
    "scale_amount",
    "topic_to_address",
]
