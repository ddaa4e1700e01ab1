"""
In-memory record store.

Used for local runs and tests. A single asyncio lock serialises every
mutation so the atomicity guarantees match the Postgres backend within
one process.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from shared.errors import DuplicateRecordError
from shared.logging import get_logger

from .base import RecordStore
from .models import BucketState, DepositRecord, Principal, PrincipalStatus


class InMemoryRecordStore(RecordStore):
    """Dict-backed store with the same contract as the SQL backend."""

    def __init__(self):
        self.logger = get_logger("store.memory")
        self._lock = asyncio.Lock()
        self._principals: Dict[str, Principal] = {}
        self._deposits: Dict[str, DepositRecord] = {}
        self._buckets: Dict[Tuple[str, str], BucketState] = {}

    async def insert_principal(self, principal: Principal) -> Principal:
        async with self._lock:
            if any(p.name == principal.name for p in self._principals.values()):
                raise DuplicateRecordError("agents", principal.name)
            if principal.principal_id in self._principals:
                raise DuplicateRecordError("agents", principal.principal_id)
            self._principals[principal.principal_id] = replace(principal)
        return replace(principal)

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        principal = self._principals.get(principal_id)
        return replace(principal) if principal else None

    async def find_principals_by_prefix(self, api_key_prefix: str) -> List[Principal]:
        return [
            replace(p) for p in self._principals.values()
            if p.api_key_prefix == api_key_prefix
        ]

    async def mark_principal_active(self, principal_id: str, seen_at: datetime) -> None:
        async with self._lock:
            principal = self._principals.get(principal_id)
            if principal is not None:
                principal.status = PrincipalStatus.ONLINE
                principal.last_seen = seen_at

    async def replace_credential(self, principal_id: str, api_key_hash: str, api_key_prefix: str) -> bool:
        async with self._lock:
            principal = self._principals.get(principal_id)
            if principal is None:
                return False
            principal.api_key_hash = api_key_hash
            principal.api_key_prefix = api_key_prefix
            return True

    async def get_deposit(self, tx_hash: str) -> Optional[DepositRecord]:
        record = self._deposits.get(tx_hash)
        return replace(record) if record else None

    async def credit_deposit(self, record: DepositRecord) -> Decimal:
        async with self._lock:
            if record.tx_hash in self._deposits:
                self.logger.info("Duplicate deposit rejected at insert", tx_hash=record.tx_hash)
                raise DuplicateRecordError("deposits", record.tx_hash)
            principal = self._principals.get(record.principal_id)
            if principal is None:
                raise ValueError(f"unknown principal {record.principal_id}")
            self._deposits[record.tx_hash] = replace(record)
            principal.balance += record.amount
            return principal.balance

    async def list_deposits(self, principal_id: str, limit: int = 50) -> List[DepositRecord]:
        records = [r for r in self._deposits.values() if r.principal_id == principal_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [replace(r) for r in records[:limit]]

    async def load_bucket(self, subject: str, action_class: str) -> Optional[BucketState]:
        state = self._buckets.get((subject, action_class))
        return replace(state) if state else None

    async def compare_and_swap_bucket(self, state: BucketState, expected_version: int) -> bool:
        key = (state.subject, state.action_class)
        async with self._lock:
            current = self._buckets.get(key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            self._buckets[key] = replace(state)
            return True

    async def delete_bucket(self, subject: str, action_class: str) -> None:
        async with self._lock:
            self._buckets.pop((subject, action_class), None)
