"""Chat storage baseline: checkpoints, retention records, consent history.

Uses the same statements PostgresBackend.setup() applies at startup, so an
environment bootstrapped either way ends up with identical tables.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op

from chat_orchestrator.storage.schema import SCHEMA_STATEMENTS, TABLES


def upgrade() -> None:
    for statement in SCHEMA_STATEMENTS:
        op.execute(statement)


def downgrade() -> None:
    for table in TABLES:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
