"""Database connection and schema management for the GBML engine."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
from asyncpg import Pool

from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)


class Database:
    """PostgreSQL connection pool manager.

    One pool per process; ``configure`` must be called with a DSN before the
    first query (``build_engine`` does this from settings).
    """

    _pool: Optional[Pool] = None
    _dsn: Optional[str] = None

    @classmethod
    def configure(cls, dsn: str) -> None:
        if dsn.startswith("postgres://"):
            dsn = dsn.replace("postgres://", "postgresql://", 1)
        cls._dsn = dsn

    @classmethod
    async def get_pool(cls) -> Pool:
        """Get or create the connection pool."""
        if cls._pool is None:
            if not cls._dsn:
                raise StorageError("Database DSN not configured", operation="connect")

            pool_kwargs: dict = {
                "min_size": 2,
                "max_size": 10,
                "command_timeout": 60,
            }

            if "neon" in cls._dsn:
                import ssl
                pool_kwargs.update({
                    "ssl": ssl.create_default_context(),
                    "min_size": 1,
                    "max_size": 5,
                    "statement_cache_size": 0,  # Required for pgbouncer/Neon pooler
                })

            try:
                cls._pool = await asyncpg.create_pool(cls._dsn, **pool_kwargs)
            except (OSError, asyncpg.PostgresError) as e:
                raise StorageError(f"Could not connect to database: {e}", operation="connect") from e
        return cls._pool

    @classmethod
    async def close(cls) -> None:
        if cls._pool:
            await cls._pool.close()
            cls._pool = None

    @classmethod
    @asynccontextmanager
    async def connection(cls) -> AsyncGenerator[asyncpg.Connection, None]:
        pool = await cls.get_pool()
        async with pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with cls.connection() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch(cls, query: str, *args) -> list:
        async with cls.connection() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def fetchrow(cls, query: str, *args):
        async with cls.connection() as conn:
            return await conn.fetchrow(query, *args)


@asynccontextmanager
async def storage_errors(operation: str) -> AsyncGenerator[None, None]:
    """Translate driver/connection failures into StorageError."""
    try:
        yield
    except StorageError:
        raise
    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        logger.error("Storage operation failed", operation=operation, error=str(e))
        raise StorageError(f"{operation} failed: {e}", operation=operation) from e


async def init_database() -> None:
    """Create the engine tables if they do not exist (dev/test)."""
    async with storage_errors("init_database"):
        async with Database.connection() as conn:
            await conn.execute(SCHEMA_SQL)


SCHEMA_SQL = """
-- Circuit breaker state, one row per (scope, target)
CREATE TABLE IF NOT EXISTS pause_states (
    scope VARCHAR(16) NOT NULL,
    target_id VARCHAR(128) NOT NULL,
    is_paused BOOLEAN NOT NULL DEFAULT FALSE,
    reason TEXT NOT NULL DEFAULT '',
    set_by VARCHAR(128),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (scope, target_id)
);

-- Disbursement requests (never deleted)
CREATE TABLE IF NOT EXISTS disbursement_requests (
    id VARCHAR(64) PRIMARY KEY,
    tenant_id VARCHAR(128) NOT NULL,
    amount VARCHAR(100) NOT NULL,
    token_address VARCHAR(42) NOT NULL,
    recipient_address VARCHAR(42) NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    requested_by VARCHAR(128) NOT NULL,
    status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
    approved_by VARCHAR(128),
    executed_by VARCHAR(128),
    blockchain_tx_hash VARCHAR(66),
    token_decimals SMALLINT,
    failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_disbursements_tenant_status
    ON disbursement_requests(tenant_id, status, created_at DESC);

-- Tenant payment modules
CREATE TABLE IF NOT EXISTS payment_modules (
    module_id VARCHAR(64) PRIMARY KEY,
    tenant_id VARCHAR(128) NOT NULL,
    token_address VARCHAR(42) NOT NULL,
    token_mode VARCHAR(16) NOT NULL DEFAULT 'ATTACH',
    decimals SMALLINT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_modules_tenant ON payment_modules(tenant_id);

-- Append-only audit trail
CREATE TABLE IF NOT EXISTS audit_log (
    id VARCHAR(64) PRIMARY KEY,
    action VARCHAR(32) NOT NULL,
    resource VARCHAR(32) NOT NULL,
    tenant_id VARCHAR(128),
    actor_id VARCHAR(128),
    payload JSONB NOT NULL DEFAULT '{}',
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_audit_tenant ON audit_log(tenant_id, created_at DESC);
"""


__all__ = ["Database", "storage_errors", "init_database", "SCHEMA_SQL"]
