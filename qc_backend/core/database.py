"""
Async PostgreSQL connection pool module.

This module provides an async PostgreSQL connection pool using asyncpg,
implementing a module-level singleton shared by the Postgres-backed stores.
It is only used when DATABASE_URL is configured; without it the service keeps
its state in process memory and never touches this module.

Key Components:
- Global connection pool singleton (_pool)
- init_db(): Initialize the connection pool at application startup
- get_db_pool(): Get the pool instance (initializes if needed)
- close_db(): Gracefully close the pool at application shutdown
- apply_schema(): Create the orchestrator tables if they do not exist
- affected_rows(): row count from an asyncpg command status

Connection Pool Configuration:
- min_size: 2 (minimum idle connections kept in pool)
- max_size: 10 (maximum connections in pool)
- command_timeout: 60 seconds (query timeout)

Usage:
    # At application startup (in FastAPI lifespan)
    await init_db()
    await apply_schema()

    # In stores
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(CLAIM_NEXT_ITEM, worker_id, now)

    # At application shutdown
    await close_db()
"""

import logging
from typing import Optional

import asyncpg
from asyncpg import Pool

from qc_backend.core.config import get_settings
from qc_backend.sql.schema import SCHEMA_STATEMENTS


logger = logging.getLogger(__name__)


# =============================================================================
# Global Pool Singleton
# =============================================================================

# None until init_db() is called; shared across all async tasks
_pool: Optional[Pool] = None


# =============================================================================
# Pool Lifecycle Functions
# =============================================================================

async def init_db(dsn: Optional[str] = None) -> Pool:
    """
    Initialize the database connection pool.

    Idempotent: if the pool already exists it is returned unchanged.

    Args:
        dsn: Connection string. Defaults to settings.database_url.

    Returns:
        Pool: The asyncpg connection pool instance.

    Raises:
        RuntimeError: If no connection string is configured.
        asyncpg.PostgresError: If connection to the database fails.
        OSError: If the database host is unreachable.
    """
    global _pool

    if _pool is None:
        dsn = dsn or get_settings().database_url
        if not dsn:
            raise RuntimeError("DATABASE_URL is not configured")

        _pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=2,
            max_size=10,
            command_timeout=60,
        )
        logger.info("Database connection pool initialized")

    return _pool


async def get_db_pool() -> Pool:
    """
    Get the database connection pool, initializing if needed.

    Returns:
        Pool: The asyncpg connection pool instance.

    Note:
        The returned pool should not be closed manually. Use close_db() at
        application shutdown instead.
    """
    global _pool

    if _pool is None:
        await init_db()

    assert _pool is not None, "Pool should be initialized after init_db()"

    return _pool


async def close_db() -> None:
    """
    Close the database connection pool gracefully.

    Waits for checked-out connections to be released. Safe to call when the
    pool was never initialized.
    """
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Database connection pool closed")


async def apply_schema() -> None:
    """
    Create the orchestrator tables and indexes if they do not exist.

    Every statement is IF NOT EXISTS, so running this at each startup is safe.
    """
    pool = await get_db_pool()

    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)

    logger.info(f"Applied {len(SCHEMA_STATEMENTS)} schema statements")


# =============================================================================
# Command Status
# =============================================================================

def affected_rows(status: Optional[str]) -> int:
    """
    Parse the row count out of an asyncpg command status string.

    Example:
        >>> affected_rows('UPDATE 3')
        3
        >>> affected_rows('INSERT 0 1')
        1
    """
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0
