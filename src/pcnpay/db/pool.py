"""Connection pool for the customer registry database."""

import asyncio
import logging
from typing import Optional

import asyncpg

from pcnpay.config import AppConfig, get_config

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 5.0
CLOSE_TIMEOUT_SECONDS = 5.0

_pool: Optional[asyncpg.Pool] = None


async def _create_pool(dsn: str, min_size: int, max_size: int) -> asyncpg.Pool:
    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size),
            timeout=CONNECT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            f"Registry database unreachable after {CONNECT_TIMEOUT_SECONDS:.0f}s"
        )
    if pool is None:
        raise RuntimeError("asyncpg returned no pool")
    return pool


async def _health_check(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        result = await conn.fetchval("SELECT 1")
    if result != 1:
        raise RuntimeError(f"expected 1, got {result}")


async def get_pool(config: Optional[AppConfig] = None) -> asyncpg.Pool:
    """
    Return the shared registry pool, opening it on first use.

    The first call checks the database answers before the pool is handed out;
    later calls return the cached pool and ignore ``config``.

    Args:
        config: Source of db_dsn and pool bounds (defaults to get_config())

    Raises:
        RuntimeError: If db_dsn is not configured or the health check fails
        asyncio.TimeoutError: If the database does not accept connections in time
    """
    global _pool

    if _pool is not None:
        return _pool

    config = config or get_config()
    if config.db_dsn is None:
        raise RuntimeError("db_dsn not configured")

    pool = await _create_pool(str(config.db_dsn), config.db_pool_min, config.db_pool_max)
    try:
        await _health_check(pool)
    except Exception as e:
        await pool.close()
        raise RuntimeError(f"Registry database health check failed: {e}") from e

    _pool = pool
    return _pool


async def close_pool() -> None:
    """Close the shared pool, terminating it if connections do not drain in time."""
    global _pool
    pool, _pool = _pool, None
    if pool is None:
        return

    try:
        await asyncio.wait_for(pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(
            f"Registry pool did not close within {CLOSE_TIMEOUT_SECONDS:.0f}s, terminating"
        )
        pool.terminate()
