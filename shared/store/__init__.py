"""
Record store used by all access core components.

- models: Principal, DepositRecord, BucketState
- base: abstract RecordStore / BucketStore contracts
- memory: in-process backend for local runs and tests
- postgres: asyncpg backend with schema-enforced uniqueness
"""

from .base import BucketStore, RecordStore
from .memory import InMemoryRecordStore
from .models import BucketState, DepositRecord, Principal, PrincipalStatus


def create_record_store(config) -> RecordStore:
    """Build the record store selected by ``config.store_backend``."""
    if config.store_backend == "postgres":
        from .postgres import PostgresRecordStore
        return PostgresRecordStore(config.postgres_dsn)
    if config.store_backend == "memory":
        return InMemoryRecordStore()
    raise ValueError(f"Unknown store backend: {config.store_backend}")


__all__ = [
    "BucketState",
    "BucketStore",
    "DepositRecord",
    "InMemoryRecordStore",
    "Principal",
    "PrincipalStatus",
    "RecordStore",
    "create_record_store",
]
