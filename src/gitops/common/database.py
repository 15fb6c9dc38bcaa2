#!/usr/bin/env python3
"""Database Utilities for the reconciler's persisted state.

This module provides database utilities including:
    - Transaction context managers with automatic commit/rollback
    - Connection pool management
    - Error conversion to the reconciler exception hierarchy

Example:
    async with database_transaction(pool) as conn:
        await conn.execute("INSERT INTO sync_records ...")
        await conn.execute("UPDATE applications ...")
        # Automatic commit on success, rollback on exception
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from .exceptions import (
    ConnectionPoolError,
    DatabaseError,
    IntegrityError,
    TransactionError,
)

logger = logging.getLogger(__name__)

ACQUIRE_TIMEOUT_SECONDS = 30.0


# ============================================
# Transaction Context Managers
# ============================================

@asynccontextmanager
async def database_transaction(
    pool,
    isolation: str = "read_committed",
    readonly: bool = False,
) -> AsyncIterator[Any]:
    """Context manager for database transactions with automatic commit/rollback.

    Args:
        pool: asyncpg connection pool
        isolation: Transaction isolation level
            ("serializable", "repeatable_read", "read_committed")
        readonly: If True, transaction is read-only

    Yields:
        Database connection within transaction

    Raises:
        ConnectionPoolError: If connection cannot be acquired
        TransactionError: If transaction fails
        IntegrityError: If integrity constraint violated
    """
    if pool is None:
        raise ConnectionPoolError("Database connection pool is not initialized")

    conn = None
    try:
        try:
            conn = await asyncio.wait_for(
                pool.acquire(),
                timeout=ACQUIRE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise ConnectionPoolError(
                "Timeout acquiring database connection",
                details={"timeout_seconds": ACQUIRE_TIMEOUT_SECONDS},
            )
        except Exception as e:
            raise ConnectionPoolError(
                f"Failed to acquire database connection: {e}",
                cause=e,
            )

        transaction = conn.transaction(isolation=isolation, readonly=readonly)

        try:
            await transaction.start()
        except Exception as e:
            raise TransactionError(
                f"Failed to start transaction: {e}",
                cause=e,
            )

        try:
            yield conn
            await transaction.commit()
            logger.debug("Transaction committed successfully")

        except Exception as e:
            try:
                await transaction.rollback()
                logger.debug("Transaction rolled back due to exception")
            except Exception as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")

            raise _convert_db_exception(e)

    finally:
        if conn:
            await pool.release(conn)


@asynccontextmanager
async def database_connection(pool) -> AsyncIterator[Any]:
    """Simple context manager for database connection without transaction.

    Use this for read-only operations.
    """
    if pool is None:
        raise ConnectionPoolError("Database connection pool is not initialized")

    conn = None
    try:
        conn = await asyncio.wait_for(pool.acquire(), timeout=ACQUIRE_TIMEOUT_SECONDS)
        yield conn
    except asyncio.TimeoutError:
        raise ConnectionPoolError(
            "Timeout acquiring database connection",
            details={"timeout_seconds": ACQUIRE_TIMEOUT_SECONDS},
        )
    finally:
        if conn:
            await pool.release(conn)


# ============================================
# Error Conversion
# ============================================

def _convert_db_exception(e: Exception) -> Exception:
    """Convert database exception to appropriate DatabaseError subtype.

    Exceptions that do not come from the database (domain errors raised
    inside the transaction body) are returned unchanged.
    """
    if isinstance(e, DatabaseError):
        return e

    if not isinstance(e, (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)):
        return e

    error_str = str(e).lower()

    if "unique" in error_str or "duplicate" in error_str:
        return IntegrityError(
            f"Duplicate entry: {e}",
            constraint="unique",
            cause=e,
        )

    if "foreign key" in error_str:
        return IntegrityError(
            f"Foreign key violation: {e}",
            constraint="foreign_key",
            cause=e,
        )

    if "not null" in error_str:
        return IntegrityError(
            f"Not null violation: {e}",
            constraint="not_null",
            cause=e,
        )

    if "deadlock" in error_str:
        return TransactionError(
            f"Deadlock detected: {e}",
            operation="transaction",
            cause=e,
        )

    if "timeout" in error_str or "timed out" in error_str:
        return TransactionError(
            f"Database operation timed out: {e}",
            operation="query",
            cause=e,
        )

    return DatabaseError(
        f"Database operation failed: {e}",
        cause=e,
    )


# ============================================
# Connection Pool Helpers
# ============================================

async def create_pool(
    database_url: str,
    min_size: int = 2,
    max_size: int = 10,
    command_timeout: float = 60.0,
    **kwargs,
):
    """Create a database connection pool with error handling.

    Raises:
        ConnectionPoolError: If pool creation fails
    """
    try:
        pool = await asyncpg.create_pool(
            database_url,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
            **kwargs,
        )
    except Exception as e:
        raise ConnectionPoolError(
            f"Failed to create database pool: {e}",
            cause=e,
        )

    logger.info(f"Database pool created (min={min_size}, max={max_size})")
    return pool


async def close_pool(pool, timeout: float = 10.0):
    """Close database pool gracefully."""
    if pool is None:
        return

    try:
        await asyncio.wait_for(pool.close(), timeout=timeout)
        logger.info("Database pool closed")
    except asyncio.TimeoutError:
        logger.warning(f"Pool close timed out after {timeout}s, terminating")
        pool.terminate()


async def check_database_health(pool) -> dict[str, Any]:
    """Check database connection health."""
    if pool is None:
        return {
            "healthy": False,
            "error": "Pool not initialized",
        }

    try:
        async with database_connection(pool) as conn:
            result = await conn.fetchval("SELECT 1")
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return {"healthy": False, "error": type(e).__name__}

    pool_size = pool.get_size()
    pool_free = pool.get_idle_size()
    return {
        "healthy": result == 1,
        "pool_size": pool_size,
        "pool_free": pool_free,
        "pool_used": pool_size - pool_free,
    }
