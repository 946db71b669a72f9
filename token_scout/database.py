"""
Postgres pool for the analysis store.

Persistence is optional: when DATABASE_URL is empty (or the database is down
at startup) the pool is never created and the pipeline only publishes events.

Usage:
    from token_scout import database as db

    await db.init_pool(settings.DATABASE_URL)
    await db.execute("INSERT INTO tokens (address) VALUES ($1)", address)
    await db.close_pool()
"""

import asyncio
import asyncpg
import logging
from typing import Optional, Any

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None


def _host_part(dsn: str) -> str:
    # never log credentials
    return dsn.rsplit("@", 1)[-1] if "@" in dsn else "localhost"


async def init_pool(dsn: str, min_size: int = 1, max_size: int = 5, command_timeout: int = 30) -> asyncpg.Pool:
    """Open the store's pool. Calling it twice returns the existing pool."""
    global _pool
    if _pool is not None:
        logger.warning("Store pool already open, reusing it")
        return _pool

    _pool = await asyncpg.create_pool(
        dsn=dsn,
        min_size=min_size,
        max_size=max_size,
        command_timeout=command_timeout,
    )
    logger.info("Store pool open (%d-%d connections) -> %s", min_size, max_size, _host_part(dsn))
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    pool, _pool = _pool, None
    await pool.close()
    logger.info("Store pool closed")


def is_initialised() -> bool:
    return _pool is not None


async def execute(query: str, *args: Any) -> str:
    """Run one write statement; returns asyncpg's status string ("INSERT 0 1")."""
    if _pool is None:
        raise RuntimeError("store pool is not open")
    async with _pool.acquire() as conn:
        return await conn.execute(query, *args)


async def check_health() -> bool:
    if _pool is None:
        return False
    try:
        return await _pool.fetchval("SELECT 1") == 1
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
        logger.warning("Store health check failed: %s", exc)
        return False
