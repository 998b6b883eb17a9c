"""
Encrypted checkpoint store for conversation state.

One row per run id. The AgentState is serialized to JSON and sealed with
AES-GCM before it reaches the backend; only run_id, user_id, sizes and
timestamps are stored in the clear (needed for stats, TTL cleanup and
per-user deletion).

A checkpoint that cannot be decrypted or parsed is reported as absent, so a
rotated key or a corrupted row degrades into a cold start for that run.
"""

from contextlib import contextmanager
from datetime import timedelta
from typing import AsyncIterator

from pydantic import ValidationError

from chat_orchestrator.core.crypto import DecryptionError, StateCipher
from chat_orchestrator.core.errors import CheckpointStoreError, CheckpointStoreUnavailable, StorageError
from chat_orchestrator.core.graph_state import AgentState, utcnow
from chat_orchestrator.core.logging import get_logger, redact_state
from chat_orchestrator.core.telemetry import Telemetry
from chat_orchestrator.storage.backend import StorageBackend
from chat_orchestrator.storage.models import Checkpoint, CheckpointFilter, CheckpointRow, CheckpointStats

log = get_logger(__name__)


@contextmanager
def _storage_errors(operation: str):
    try:
        yield
    except StorageError as exc:
        raise CheckpointStoreError(f"checkpoint {operation} failed: {exc}") from exc


class CheckpointStore:
    def __init__(
        self,
        backend: StorageBackend,
        cipher: StateCipher,
        *,
        ttl_seconds: int = 86_400,
        telemetry: Telemetry | None = None,
    ):
        self._backend = backend
        self._cipher = cipher
        self._ttl_seconds = ttl_seconds
        self._telemetry = telemetry or Telemetry()
        self._initialized = False

    async def initialize(self) -> None:
        """Prepare backing storage. Safe to call repeatedly; raises if the backend is unreachable."""
        if self._initialized:
            return
        try:
            await self._backend.setup()
            await self._backend.ping()
        except Exception as exc:
            log.error("checkpoint_store_unavailable", error=str(exc))
            raise CheckpointStoreUnavailable(f"checkpoint storage unreachable: {exc}") from exc
        self._initialized = True
        log.info("checkpoint_store_ready")

    def _decode(self, row: CheckpointRow) -> Checkpoint | None:
        try:
            payload = self._cipher.decrypt(row.state_ciphertext, associated_data=row.run_id)
            state = AgentState.model_validate_json(payload)
        except (DecryptionError, ValidationError, UnicodeDecodeError) as exc:
            log.warning("checkpoint_unreadable", run_id=row.run_id, error_type=type(exc).__name__)
            self._telemetry.increment("checkpoint.unreadable")
            return None
        return Checkpoint(
            run_id=row.run_id,
            user_id=row.user_id,
            state=state,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def get(self, run_id: str) -> Checkpoint | None:
        with _storage_errors("read"):
            row = await self._backend.get_checkpoint(run_id)
        if row is None:
            return None
        return self._decode(row)

    async def owner(self, run_id: str) -> str | None:
        """The clear-text user_id of run_id's checkpoint, readable even when its state is not."""
        with _storage_errors("read"):
            row = await self._backend.get_checkpoint(run_id)
        return row.user_id if row else None

    async def put(self, run_id: str, state: AgentState) -> None:
        ciphertext = self._cipher.encrypt(state.model_dump_json(), associated_data=run_id)
        with _storage_errors("write"):
            version = await self._backend.upsert_checkpoint(
                run_id, state.user_id, ciphertext, len(ciphertext), utcnow()
            )
        log.debug(
            "checkpoint_saved",
            run_id=run_id,
            version=version,
            size=len(ciphertext),
            state=redact_state(state.model_dump(mode="json", include={"user_id", "messages", "docs", "generated_text"})),
        )
        self._telemetry.gauge("checkpoint.size_bytes", len(ciphertext))

    async def list(self, filter: CheckpointFilter | None = None) -> AsyncIterator[Checkpoint]:
        """
        Yield every readable checkpoint matching `filter`, one backend page at a
        time. The iterator is single-pass.
        """
        filter = filter or CheckpointFilter()
        after: str | None = None
        while True:
            with _storage_errors("scan"):
                page = await self._backend.scan_checkpoints(
                    user_id=filter.user_id,
                    updated_before=filter.updated_before,
                    updated_after=filter.updated_after,
                    after_run_id=after,
                    limit=filter.page_size,
                )
            if not page:
                return
            for row in page:
                checkpoint = self._decode(row)
                if checkpoint is not None:
                    yield checkpoint
            after = page[-1].run_id
            if len(page) < filter.page_size:
                return

    async def delete(self, run_id: str) -> bool:
        with _storage_errors("delete"):
            deleted = await self._backend.delete_checkpoint(run_id)
        log.info("checkpoint_deleted", run_id=run_id, found=deleted)
        return deleted

    async def get_stats(self) -> CheckpointStats:
        with _storage_errors("stats"):
            return await self._backend.checkpoint_stats()

    async def cleanup(self, max_age_seconds: float | None = None) -> int:
        """Delete checkpoints not updated within `max_age_seconds` (default: the configured TTL)."""
        max_age = self._ttl_seconds if max_age_seconds is None else max_age_seconds
        cutoff = utcnow() - timedelta(seconds=max_age)
        with _storage_errors("cleanup"):
            deleted = await self._backend.delete_checkpoints_updated_before(cutoff)
        log.info("checkpoint_cleanup", deleted=deleted, max_age_s=max_age)
        self._telemetry.increment("checkpoint.expired", deleted)
        return deleted
