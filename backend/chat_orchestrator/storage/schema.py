"""
DDL for the Postgres backend.

Applied idempotently by PostgresBackend.setup() and by the alembic baseline
migration, so both paths always produce the same tables.
"""

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS chat_checkpoints (
        run_id           TEXT PRIMARY KEY,
        user_id          TEXT NOT NULL,
        state_ciphertext TEXT NOT NULL,
        state_size       INT NOT NULL,
        version          INT NOT NULL DEFAULT 1,
        created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chat_checkpoints_user    ON chat_checkpoints(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_chat_checkpoints_updated ON chat_checkpoints(updated_at)",
    """
    CREATE TABLE IF NOT EXISTS retention_records (
        record_id  TEXT PRIMARY KEY,
        user_id    TEXT NOT NULL,
        category   TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        anonymized BOOLEAN NOT NULL DEFAULT false
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_retention_records_user     ON retention_records(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_retention_records_category ON retention_records(category)",
    """
    CREATE TABLE IF NOT EXISTS consent_records (
        id            BIGSERIAL PRIMARY KEY,
        user_id       TEXT NOT NULL,
        category      TEXT NOT NULL,
        duration_days INT NOT NULL CHECK (duration_days BETWEEN 1 AND 1825),
        granted_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_consent_records_lookup
        ON consent_records(user_id, category, granted_at DESC)
    """,
)

TABLES: tuple[str, ...] = ("consent_records", "retention_records", "chat_checkpoints")
