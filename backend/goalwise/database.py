import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import HTTPException
from psycopg import AsyncConnection
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from .config import settings

logger = logging.getLogger(__name__)

# One pool per process; request dependencies and the streamed chat body both borrow from it.
pool: AsyncConnectionPool | None = None


async def init_db_pool() -> None:
    global pool

    if not settings.database_url:
        # DB-backed routes report the missing URL when they are hit.
        logger.warning("DATABASE_URL is not set; database routes are disabled")
        return

    pool = AsyncConnectionPool(
        conninfo=settings.database_url,
        open=False,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        kwargs={"autocommit": True, "row_factory": dict_row},
    )
    await pool.open()
    logger.info("Database pool opened (min=%s, max=%s)", settings.db_pool_min_size, settings.db_pool_max_size)


async def close_db_pool() -> None:
    global pool

    if pool is None:
        return

    await pool.close()
    pool = None


@asynccontextmanager
async def connection_scope() -> AsyncIterator[AsyncConnection]:
    """Borrow a pooled connection outside of a request dependency."""
    if pool is None:
        raise HTTPException(status_code=500, detail="DATABASE_URL is not configured")

    async with pool.connection() as connection:
        yield connection


async def get_db_connection() -> AsyncIterator[AsyncConnection]:
    async with connection_scope() as connection:
        yield connection
