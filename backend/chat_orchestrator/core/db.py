"""
Async Postgres connection pool for the storage backend.

psycopg3 (psycopg) API: uses cursor.fetchone(), not fetchrow().

The pool is created closed; PostgresBackend.setup() opens it inside the
running event loop. Celery tasks build their own pool per task run because
a pool is bound to the loop that opened it.

Usage:
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute("SELECT * FROM chat_checkpoints WHERE run_id = %s", (run_id,))
            row = await cur.fetchone()   # returns a dict (dict_row factory)
"""

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from chat_orchestrator.core.config import get_settings


def create_pool(database_url: str | None = None, max_size: int | None = None) -> AsyncConnectionPool:
    settings = get_settings()
    return AsyncConnectionPool(
        conninfo=database_url or settings.database_url,
        max_size=max_size or settings.db_pool_max_size,
        kwargs={"autocommit": True, "row_factory": dict_row},
        open=False,
    )
