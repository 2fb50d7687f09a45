"""Core database connection pool management."""

import logging
from contextlib import asynccontextmanager

import psycopg
from psycopg_pool import AsyncConnectionPool

from rendezvous.config import get_settings
from rendezvous.errors import StorageError

_logger = logging.getLogger(__name__)

# Global connection pool
_pool: AsyncConnectionPool | None = None


def _get_dsn() -> str:
    """Get DSN from settings."""
    return get_settings().postgres.get_dsn()


async def init_pool() -> None:
    global _pool
    if _pool is not None:
        return
    settings = get_settings().postgres
    _pool = AsyncConnectionPool(
        settings.get_dsn(),
        min_size=settings.pool_min_size,
        max_size=settings.pool_max_size,
        timeout=settings.pool_timeout,
        max_lifetime=settings.pool_max_lifetime,
        max_idle=settings.pool_max_idle,
        check=AsyncConnectionPool.check_connection,
        open=False,
    )
    await _pool.open()
    _logger.info(
        "Database connection pool initialized (min=%d, max=%d, timeout=%ds)",
        settings.pool_min_size,
        settings.pool_max_size,
        settings.pool_timeout,
    )
    # Import here to avoid circular imports
    from rendezvous.db.schema import ensure_schema

    await ensure_schema()


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        _logger.info("Database connection pool closed")


@asynccontextmanager
async def _get_connection(autocommit: bool = True):
    """Yield a connection; psycopg failures surface as StorageError."""
    try:
        if _pool is not None:
            async with _pool.connection() as conn:
                await conn.set_autocommit(autocommit)
                yield conn
        else:
            async with await psycopg.AsyncConnection.connect(_get_dsn(), autocommit=autocommit) as conn:
                yield conn
    except psycopg.Error as e:
        _logger.error("Database operation failed: %s", e)
        raise StorageError(detail=str(e)) from e


def get_pool() -> AsyncConnectionPool | None:
    """Get the connection pool instance."""
    return _pool


def get_pool_stats() -> dict[str, object]:
    """Get current pool statistics for monitoring."""
    if _pool is None:
        return {"status": "not_initialized"}
    stats = _pool.get_stats()
    return {
        "status": "active",
        "size": stats["pool_size"],
        "available": stats["pool_available"],
        "waiting": stats["requests_waiting"],
        "min_size": stats["pool_min"],
        "max_size": stats["pool_max"],
    }


__all__ = [
    "_get_connection",
    "_get_dsn",
    "close_pool",
    "get_pool",
    "get_pool_stats",
    "init_pool",
]
