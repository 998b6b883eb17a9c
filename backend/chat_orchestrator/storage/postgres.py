"""
Postgres storage backend (psycopg3, async pool, dict rows).

Every statement runs in autocommit mode; each method is a single statement,
so concurrent writers only contend on the rows they touch.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator

import psycopg
from psycopg_pool import AsyncConnectionPool

from chat_orchestrator.core.db import create_pool
from chat_orchestrator.core.errors import StorageError
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.storage.backend import StorageBackend
from chat_orchestrator.storage.models import (
    CheckpointRow,
    CheckpointStats,
    ConsentRecord,
    RetentionRecord,
    RetentionStats,
)
from chat_orchestrator.storage.schema import SCHEMA_STATEMENTS

log = get_logger(__name__)

_CHECKPOINT_COLUMNS = "run_id, user_id, state_ciphertext, state_size, version, created_at, updated_at"


class PostgresBackend(StorageBackend):
    def __init__(self, pool: AsyncConnectionPool | None = None):
        self._pool = pool or create_pool()
        self._opened = False

    @asynccontextmanager
    async def _cursor(self) -> AsyncGenerator[psycopg.AsyncCursor, None]:
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    yield cur
        except psycopg.Error as exc:
            log.error("postgres_error", error=str(exc), error_type=type(exc).__name__)
            raise StorageError(str(exc)) from exc

    async def setup(self) -> None:
        if not self._opened:
            try:
                await self._pool.open(wait=True, timeout=10.0)
            except psycopg.Error as exc:
                raise StorageError(f"could not open connection pool: {exc}") from exc
            self._opened = True
        async with self._cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                await cur.execute(statement)
        log.info("postgres_schema_ready", statements=len(SCHEMA_STATEMENTS))

    async def close(self) -> None:
        if self._opened:
            await self._pool.close()
            self._opened = False

    async def ping(self) -> None:
        async with self._cursor() as cur:
            await cur.execute("SELECT 1")

    # ── Checkpoints ───────────────────────────────────────────────────────────

    async def get_checkpoint(self, run_id: str) -> CheckpointRow | None:
        async with self._cursor() as cur:
            await cur.execute(
                f"SELECT {_CHECKPOINT_COLUMNS} FROM chat_checkpoints WHERE run_id = %s",
                (run_id,),
            )
            row = await cur.fetchone()
        return CheckpointRow(**row) if row else None

    async def upsert_checkpoint(self, run_id, user_id, state_ciphertext, state_size, now) -> int:
        async with self._cursor() as cur:
            await cur.execute(
                """
                INSERT INTO chat_checkpoints
                    (run_id, user_id, state_ciphertext, state_size, version, created_at, updated_at)
                VALUES (%s, %s, %s, %s, 1, %s, %s)
                ON CONFLICT (run_id)
                DO UPDATE SET
                    user_id          = EXCLUDED.user_id,
                    state_ciphertext = EXCLUDED.state_ciphertext,
                    state_size       = EXCLUDED.state_size,
                    version          = chat_checkpoints.version + 1,
                    updated_at       = EXCLUDED.updated_at
                RETURNING version
                """,
                (run_id, user_id, state_ciphertext, state_size, now, now),
            )
            row = await cur.fetchone()
        return row["version"]

    async def scan_checkpoints(
        self, *, user_id=None, updated_before=None, updated_after=None, after_run_id=None, limit=100
    ) -> list[CheckpointRow]:
        clauses, params = [], []
        if after_run_id is not None:
            clauses.append("run_id > %s")
            params.append(after_run_id)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if updated_before is not None:
            clauses.append("updated_at < %s")
            params.append(updated_before)
        if updated_after is not None:
            clauses.append("updated_at > %s")
            params.append(updated_after)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        async with self._cursor() as cur:
            await cur.execute(
                f"SELECT {_CHECKPOINT_COLUMNS} FROM chat_checkpoints {where} ORDER BY run_id LIMIT %s",
                params,
            )
            rows = await cur.fetchall()
        return [CheckpointRow(**row) for row in rows]

    async def delete_checkpoint(self, run_id: str) -> bool:
        async with self._cursor() as cur:
            await cur.execute("DELETE FROM chat_checkpoints WHERE run_id = %s", (run_id,))
            return cur.rowcount > 0

    async def delete_checkpoints_updated_before(self, cutoff: datetime) -> int:
        async with self._cursor() as cur:
            await cur.execute("DELETE FROM chat_checkpoints WHERE updated_at < %s", (cutoff,))
            return cur.rowcount

    async def checkpoint_stats(self) -> CheckpointStats:
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT COUNT(*)                          AS total,
                       MIN(created_at)                   AS oldest,
                       MAX(updated_at)                   AS newest,
                       COALESCE(AVG(state_size), 0)::float AS avg_size
                FROM   chat_checkpoints
                """
            )
            totals = await cur.fetchone()
            await cur.execute(
                "SELECT user_id, COUNT(*) AS n FROM chat_checkpoints GROUP BY user_id"
            )
            by_user = await cur.fetchall()

        return CheckpointStats(
            total_checkpoints=totals["total"],
            oldest_checkpoint=totals["oldest"],
            newest_checkpoint=totals["newest"],
            average_state_size=totals["avg_size"],
            checkpoints_by_user={row["user_id"]: row["n"] for row in by_user},
        )

    # ── Retention records ─────────────────────────────────────────────────────

    async def insert_retention_record(self, record: RetentionRecord) -> bool:
        async with self._cursor() as cur:
            await cur.execute(
                """
                INSERT INTO retention_records (record_id, user_id, category, created_at, anonymized)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (record_id) DO NOTHING
                """,
                (record.record_id, record.user_id, record.category, record.created_at, record.anonymized),
            )
            return cur.rowcount > 0

    async def scan_retention_records(self, *, user_id=None, after_record_id=None, limit=100):
        clauses, params = [], []
        if after_record_id is not None:
            clauses.append("record_id > %s")
            params.append(after_record_id)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        async with self._cursor() as cur:
            await cur.execute(
                f"SELECT record_id, user_id, category, created_at, anonymized FROM retention_records "
                f"{where} ORDER BY record_id LIMIT %s",
                params,
            )
            rows = await cur.fetchall()
        return [RetentionRecord(**row) for row in rows]

    async def delete_retention_record(self, record_id: str) -> bool:
        async with self._cursor() as cur:
            await cur.execute("DELETE FROM retention_records WHERE record_id = %s", (record_id,))
            return cur.rowcount > 0

    async def anonymize_retention_record(self, record_id: str, pseudonym: str) -> bool:
        async with self._cursor() as cur:
            await cur.execute(
                "UPDATE retention_records SET user_id = %s, anonymized = true WHERE record_id = %s",
                (pseudonym, record_id),
            )
            return cur.rowcount > 0

    async def retention_stats(self) -> RetentionStats:
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT COUNT(*)                              AS total,
                       MIN(created_at)                       AS oldest,
                       MAX(created_at)                       AS newest,
                       COUNT(*) FILTER (WHERE anonymized)    AS anonymized
                FROM   retention_records
                """
            )
            totals = await cur.fetchone()
            await cur.execute(
                "SELECT category, COUNT(*) AS n FROM retention_records GROUP BY category"
            )
            by_category = await cur.fetchall()
            await cur.execute(
                "SELECT user_id, COUNT(*) AS n FROM retention_records GROUP BY user_id"
            )
            by_user = await cur.fetchall()

        return RetentionStats(
            total_records=totals["total"],
            records_by_category={row["category"]: row["n"] for row in by_category},
            records_by_user={row["user_id"]: row["n"] for row in by_user},
            oldest_record=totals["oldest"],
            newest_record=totals["newest"],
            anonymized_records=totals["anonymized"],
        )

    # ── Consent ───────────────────────────────────────────────────────────────

    async def insert_consent(self, consent: ConsentRecord) -> None:
        async with self._cursor() as cur:
            await cur.execute(
                """
                INSERT INTO consent_records (user_id, category, duration_days, granted_at)
                VALUES (%s, %s, %s, %s)
                """,
                (consent.user_id, consent.category, consent.duration_days, consent.granted_at),
            )

    async def latest_consent(self, user_id: str, category: str) -> ConsentRecord | None:
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT user_id, category, duration_days, granted_at
                FROM   consent_records
                WHERE  user_id = %s AND category = %s
                ORDER  BY granted_at DESC, id DESC
                LIMIT  1
                """,
                (user_id, category),
            )
            row = await cur.fetchone()
        return ConsentRecord(**row) if row else None

    async def delete_consents(self, user_id: str) -> int:
        async with self._cursor() as cur:
            await cur.execute("DELETE FROM consent_records WHERE user_id = %s", (user_id,))
            return cur.rowcount
