"""Row and aggregate models shared by the storage backends and their callers."""

from datetime import datetime

from pydantic import BaseModel, Field

from chat_orchestrator.core.graph_state import AgentState, utcnow


class CheckpointRow(BaseModel):
    """A checkpoint as stored: state is still ciphertext."""
    run_id: str
    user_id: str
    state_ciphertext: str
    state_size: int
    version: int
    created_at: datetime
    updated_at: datetime


class Checkpoint(BaseModel):
    run_id: str
    user_id: str
    state: AgentState
    version: int
    created_at: datetime
    updated_at: datetime


class CheckpointFilter(BaseModel):
    user_id: str | None = None
    updated_before: datetime | None = None
    updated_after: datetime | None = None
    page_size: int = Field(default=100, ge=1, le=1000)


class CheckpointStats(BaseModel):
    total_checkpoints: int = 0
    oldest_checkpoint: datetime | None = None
    newest_checkpoint: datetime | None = None
    average_state_size: float = 0.0
    checkpoints_by_user: dict[str, int] = Field(default_factory=dict)


class RetentionRecord(BaseModel):
    record_id: str
    user_id: str
    category: str
    created_at: datetime = Field(default_factory=utcnow)
    # Owner replaced by a pseudonym once the retention period ran out
    anonymized: bool = False


class ConsentRecord(BaseModel):
    user_id: str
    category: str
    duration_days: int
    granted_at: datetime = Field(default_factory=utcnow)


class RetentionStats(BaseModel):
    total_records: int = 0
    records_by_category: dict[str, int] = Field(default_factory=dict)
    records_by_user: dict[str, int] = Field(default_factory=dict)
    oldest_record: datetime | None = None
    newest_record: datetime | None = None
    anonymized_records: int = 0
