"""
PostgreSQL record store.

Uniqueness is enforced by the schema (agents.name, deposits.tx_hash) and
every multi-row change runs inside one transaction, so concurrent
requests across replicas cannot double-credit a deposit.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Optional

import asyncpg

from shared.errors import DuplicateRecordError, StoreUnavailableError
from shared.logging import get_logger

from .base import RecordStore
from .models import BucketState, DepositRecord, Principal, PrincipalStatus


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS agents (
        id UUID PRIMARY KEY,
        name VARCHAR(50) NOT NULL UNIQUE,
        bio TEXT,
        wallet_address TEXT,
        api_key_hash TEXT NOT NULL,
        api_key_prefix VARCHAR(16) NOT NULL,
        balance_usdc NUMERIC(20, 6) NOT NULL DEFAULT 0 CHECK (balance_usdc >= 0),
        status VARCHAR(16) NOT NULL DEFAULT 'offline',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        last_seen TIMESTAMP WITH TIME ZONE
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_agents_api_key_prefix ON agents(api_key_prefix);
    """,
    """
    CREATE TABLE IF NOT EXISTS deposits (
        id BIGSERIAL PRIMARY KEY,
        agent_id UUID NOT NULL REFERENCES agents(id),
        tx_hash VARCHAR(66) NOT NULL UNIQUE,
        amount NUMERIC(20, 6) NOT NULL,
        from_address TEXT NOT NULL,
        block_number BIGINT NOT NULL,
        verified BOOLEAN NOT NULL DEFAULT TRUE,
        test_mode BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_deposits_agent ON deposits(agent_id);
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_limit_buckets (
        subject TEXT NOT NULL,
        action_class VARCHAR(32) NOT NULL,
        capacity DOUBLE PRECISION NOT NULL,
        tokens DOUBLE PRECISION NOT NULL,
        last_refill DOUBLE PRECISION NOT NULL,
        version BIGINT NOT NULL,
        PRIMARY KEY (subject, action_class)
    );
    """,
)

CONNECTION_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    # Server-side refusals such as CannotConnectNowError and TooManyConnectionsError
    asyncpg.OperatorInterventionError,
    asyncpg.InsufficientResourcesError,
    asyncio.TimeoutError,
    OSError,
)


def _rows_affected(status: str) -> int:
    """Parse the row count out of a command tag like ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


def _principal_from_row(row) -> Principal:
    return Principal(
        principal_id=str(row["id"]),
        name=row["name"],
        bio=row["bio"],
        wallet_address=row["wallet_address"],
        api_key_hash=row["api_key_hash"],
        api_key_prefix=row["api_key_prefix"],
        balance=row["balance_usdc"],
        status=PrincipalStatus(row["status"]),
        created_at=row["created_at"],
        last_seen=row["last_seen"],
    )


def _deposit_from_row(row) -> DepositRecord:
    return DepositRecord(
        tx_hash=row["tx_hash"],
        principal_id=str(row["agent_id"]),
        amount=row["amount"],
        from_address=row["from_address"],
        block_number=row["block_number"],
        verified=row["verified"],
        test_mode=row["test_mode"],
        created_at=row["created_at"],
    )


class PostgresRecordStore(RecordStore):
    """asyncpg-backed record store."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10, command_timeout: float = 30):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("store.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Create the pool and the schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
        except CONNECTION_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL store", error=str(e))
            raise StoreUnavailableError(details={"error": str(e)}) from e

        async with self._connection() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)

        self.logger.info("PostgreSQL store started")

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL store stopped")

    async def health_check(self) -> bool:
        try:
            async with self._connection() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except StoreUnavailableError:
            return False

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        if self.pool is None:
            raise StoreUnavailableError("Record store not started")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except CONNECTION_ERRORS as e:
            self.logger.error("PostgreSQL connection error", error=str(e))
            raise StoreUnavailableError(details={"error": str(e)}) from e

    async def insert_principal(self, principal: Principal) -> Principal:
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow("""
                    INSERT INTO agents (
                        id, name, bio, wallet_address, api_key_hash, api_key_prefix,
                        balance_usdc, status, created_at, last_seen
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    RETURNING *
                """,
                    principal.principal_id, principal.name, principal.bio,
                    principal.wallet_address, principal.api_key_hash,
                    principal.api_key_prefix, principal.balance,
                    principal.status.value, principal.created_at, principal.last_seen
                )
            except asyncpg.UniqueViolationError as e:
                raise DuplicateRecordError("agents", principal.name) from e

        return _principal_from_row(row)

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM agents WHERE id = $1", principal_id)
        return _principal_from_row(row) if row else None

    async def find_principals_by_prefix(self, api_key_prefix: str) -> List[Principal]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM agents WHERE api_key_prefix = $1",
                api_key_prefix
            )
        return [_principal_from_row(row) for row in rows]

    async def mark_principal_active(self, principal_id: str, seen_at: datetime) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE agents SET status = $2, last_seen = $3 WHERE id = $1",
                principal_id, PrincipalStatus.ONLINE.value, seen_at
            )

    async def replace_credential(self, principal_id: str, api_key_hash: str, api_key_prefix: str) -> bool:
        async with self._connection() as conn:
            status = await conn.execute(
                "UPDATE agents SET api_key_hash = $2, api_key_prefix = $3 WHERE id = $1",
                principal_id, api_key_hash, api_key_prefix
            )
        return _rows_affected(status) == 1

    async def get_deposit(self, tx_hash: str) -> Optional[DepositRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM deposits WHERE tx_hash = $1", tx_hash)
        return _deposit_from_row(row) if row else None

    async def credit_deposit(self, record: DepositRecord) -> Decimal:
        async with self._connection() as conn:
            async with conn.transaction():
                try:
                    await conn.execute("""
                        INSERT INTO deposits (
                            agent_id, tx_hash, amount, from_address,
                            block_number, verified, test_mode, created_at
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                        record.principal_id, record.tx_hash, record.amount,
                        record.from_address, record.block_number, record.verified,
                        record.test_mode, record.created_at
                    )
                except asyncpg.UniqueViolationError as e:
                    self.logger.info("Duplicate deposit rejected at insert", tx_hash=record.tx_hash)
                    raise DuplicateRecordError("deposits", record.tx_hash) from e

                balance = await conn.fetchval("""
                    UPDATE agents SET balance_usdc = balance_usdc + $2
                    WHERE id = $1
                    RETURNING balance_usdc
                """, record.principal_id, record.amount)

                if balance is None:
                    raise ValueError(f"unknown principal {record.principal_id}")

        return balance

    async def list_deposits(self, principal_id: str, limit: int = 50) -> List[DepositRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch("""
                SELECT * FROM deposits WHERE agent_id = $1
                ORDER BY created_at DESC LIMIT $2
            """, principal_id, limit)
        return [_deposit_from_row(row) for row in rows]

    async def load_bucket(self, subject: str, action_class: str) -> Optional[BucketState]:
        async with self._connection() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM rate_limit_buckets
                WHERE subject = $1 AND action_class = $2
            """, subject, action_class)
        if row is None:
            return None
        return BucketState(
            subject=row["subject"],
            action_class=row["action_class"],
            capacity=row["capacity"],
            tokens=row["tokens"],
            last_refill=row["last_refill"],
            version=row["version"],
        )

    async def compare_and_swap_bucket(self, state: BucketState, expected_version: int) -> bool:
        async with self._connection() as conn:
            if expected_version == 0:
                status = await conn.execute("""
                    INSERT INTO rate_limit_buckets (
                        subject, action_class, capacity, tokens, last_refill, version
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (subject, action_class) DO NOTHING
                """,
                    state.subject, state.action_class, state.capacity,
                    state.tokens, state.last_refill, state.version
                )
            else:
                status = await conn.execute("""
                    UPDATE rate_limit_buckets
                    SET capacity = $3, tokens = $4, last_refill = $5, version = $6
                    WHERE subject = $1 AND action_class = $2 AND version = $7
                """,
                    state.subject, state.action_class, state.capacity,
                    state.tokens, state.last_refill, state.version, expected_version
                )
        return _rows_affected(status) == 1

    async def delete_bucket(self, subject: str, action_class: str) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "DELETE FROM rate_limit_buckets WHERE subject = $1 AND action_class = $2",
                subject, action_class
            )
