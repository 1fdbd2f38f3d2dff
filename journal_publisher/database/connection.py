"""Asyncpg connection pool."""

import asyncio
from typing import Optional

import asyncpg
import structlog

log = structlog.get_logger()


async def create_pool(database_url: str, min_size: int = 2, max_size: int = 10) -> asyncpg.Pool:
    """
    Create asyncpg connection pool.

    Args:
        database_url: PostgreSQL connection string.
        min_size: Minimum connections in pool.
        max_size: Maximum connections in pool.

    Returns:
        asyncpg.Pool instance.
    """
    pool = await asyncpg.create_pool(
        database_url,
        min_size=min_size,
        max_size=max_size,
        command_timeout=30,
    )
    log.info("db_pool_created", min_size=min_size, max_size=max_size)
    return pool


async def create_pool_with_retry(
    database_url: str,
    max_attempts: int = 10,
    delay_seconds: float = 3.0,
) -> asyncpg.Pool:
    """
    Create pool, retrying while PostgreSQL is not reachable yet (container start order).
    Raises the last error after max_attempts.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await create_pool(database_url)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            if attempt >= max_attempts:
                log.error("db_connect_failed", attempts=attempt, error=str(e))
                raise
            log.warning(
                "db_connect_retry",
                attempt=attempt,
                max_attempts=max_attempts,
                delay_seconds=delay_seconds,
                error=str(e),
            )
            await asyncio.sleep(delay_seconds)
    raise AssertionError("unreachable")


async def close_pool(pool: Optional[asyncpg.Pool]) -> None:
    """Close pool if not None."""
    if pool:
        await pool.close()
        log.info("db_pool_closed")
