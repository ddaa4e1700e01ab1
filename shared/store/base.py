"""
Record store interface.

The core only needs a handful of operations from its relational store:
point and prefix lookups, inserts guarded by uniqueness constraints, and
a small number of atomic multi-row updates. Every backend implements
exactly this surface.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .models import BucketState, DepositRecord, Principal


class BucketStore(ABC):
    """Persistence for token buckets, updated by compare-and-swap."""

    @abstractmethod
    async def load_bucket(self, subject: str, action_class: str) -> Optional[BucketState]:
        """Return the stored bucket or None if it has never been written."""

    @abstractmethod
    async def compare_and_swap_bucket(self, state: BucketState, expected_version: int) -> bool:
        """Write ``state`` only if the stored version still equals ``expected_version``.

        A missing bucket has version 0. Returns False when another writer won.
        """

    @abstractmethod
    async def delete_bucket(self, subject: str, action_class: str) -> None:
        """Drop a bucket so the next request starts full."""


class RecordStore(BucketStore):
    """Transactional store for principals, deposits and buckets."""

    async def start(self) -> None:
        """Open connections and prepare schema."""

    async def stop(self) -> None:
        """Release connections."""

    async def health_check(self) -> bool:
        return True

    # Principals

    @abstractmethod
    async def insert_principal(self, principal: Principal) -> Principal:
        """Insert a principal. Raises DuplicateRecordError on a name clash."""

    @abstractmethod
    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        pass

    @abstractmethod
    async def find_principals_by_prefix(self, api_key_prefix: str) -> List[Principal]:
        """All principals whose stored lookup prefix equals ``api_key_prefix``."""

    @abstractmethod
    async def mark_principal_active(self, principal_id: str, seen_at: datetime) -> None:
        """Set status online and refresh last_seen."""

    @abstractmethod
    async def replace_credential(self, principal_id: str, api_key_hash: str, api_key_prefix: str) -> bool:
        """Rewrite the verifier. Returns False if the principal does not exist."""

    # Deposits

    @abstractmethod
    async def get_deposit(self, tx_hash: str) -> Optional[DepositRecord]:
        pass

    @abstractmethod
    async def credit_deposit(self, record: DepositRecord) -> Decimal:
        """Insert ``record`` and add its amount to the owner's balance atomically.

        Returns the new balance. Raises DuplicateRecordError when the
        transaction hash was already recorded; nothing is credited then.
        """

    @abstractmethod
    async def list_deposits(self, principal_id: str, limit: int = 50) -> List[DepositRecord]:
        """Most recent deposits first."""
