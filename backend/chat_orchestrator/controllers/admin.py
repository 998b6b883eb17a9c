"""
Administrative operations: checkpoint and retention statistics, cleanup,
per-user deletion and consent.

Unlike the conversational path, failures here propagate to the caller.
Operators need to know when a cleanup or deletion did not complete.
"""

from pydantic import BaseModel

from chat_orchestrator.core.checkpointer import CheckpointStore
from chat_orchestrator.core.errors import InputValidationError
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.retention.manager import DataRetentionManager
from chat_orchestrator.storage.models import CheckpointStats, RetentionStats

log = get_logger(__name__)


class DeletedCount(BaseModel):
    deleted_count: int


class ConsentRequest(BaseModel):
    duration_days: int


class ConsentResult(BaseModel):
    success: bool


class AdminController:
    def __init__(self, store: CheckpointStore, retention: DataRetentionManager):
        self._store = store
        self._retention = retention

    async def get_checkpoint_stats(self) -> CheckpointStats:
        return await self._store.get_stats()

    async def cleanup_checkpoints(self, max_age_seconds: float | None = None) -> DeletedCount:
        deleted = await self._store.cleanup(max_age_seconds)
        return DeletedCount(deleted_count=deleted)

    async def get_data_retention_stats(self) -> RetentionStats:
        return await self._retention.get_stats()

    async def cleanup_expired_data(self) -> DeletedCount:
        deleted = await self._retention.cleanup_expired_data()
        return DeletedCount(deleted_count=deleted)

    async def delete_user_data(self, user_id: str) -> DeletedCount:
        if not user_id:
            raise InputValidationError("user_id is required")
        log.info("user_data_deletion_requested", user_id=user_id)
        deleted = await self._retention.delete_user_data(user_id)
        return DeletedCount(deleted_count=deleted)

    async def record_consent(self, user_id: str, category: str, request: ConsentRequest) -> ConsentResult:
        success = await self._retention.record_consent(user_id, category, request.duration_days)
        return ConsentResult(success=success)
