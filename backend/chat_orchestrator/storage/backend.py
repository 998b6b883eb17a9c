"""
Persistence backend contract.

The checkpoint store and the retention manager are built on top of one
StorageBackend handle. Backends deal in rows only: encryption, expiry
policy and lifecycle rules live above this layer.

Scans use keyset pagination (ordered by primary key, resumed after the
last key seen), so a scan stays correct while rows are deleted under it.
"""

import abc
from collections import Counter
from datetime import datetime

from chat_orchestrator.storage.models import (
    CheckpointRow,
    CheckpointStats,
    ConsentRecord,
    RetentionRecord,
    RetentionStats,
)


class StorageBackend(abc.ABC):
    async def setup(self) -> None:
        """Create tables if needed. Idempotent."""

    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def ping(self) -> None:
        """Raise if the backend is unreachable."""

    # ── Checkpoints ───────────────────────────────────────────────────────────

    @abc.abstractmethod
    async def get_checkpoint(self, run_id: str) -> CheckpointRow | None: ...

    @abc.abstractmethod
    async def upsert_checkpoint(
        self, run_id: str, user_id: str, state_ciphertext: str, state_size: int, now: datetime
    ) -> int:
        """Insert or replace the row for run_id. Returns the new version."""

    @abc.abstractmethod
    async def scan_checkpoints(
        self,
        *,
        user_id: str | None = None,
        updated_before: datetime | None = None,
        updated_after: datetime | None = None,
        after_run_id: str | None = None,
        limit: int = 100,
    ) -> list[CheckpointRow]: ...

    @abc.abstractmethod
    async def delete_checkpoint(self, run_id: str) -> bool: ...

    @abc.abstractmethod
    async def delete_checkpoints_updated_before(self, cutoff: datetime) -> int: ...

    @abc.abstractmethod
    async def checkpoint_stats(self) -> CheckpointStats: ...

    # ── Retention records ─────────────────────────────────────────────────────

    @abc.abstractmethod
    async def insert_retention_record(self, record: RetentionRecord) -> bool:
        """Insert unless record_id exists. Returns True when a row was written."""

    @abc.abstractmethod
    async def scan_retention_records(
        self,
        *,
        user_id: str | None = None,
        after_record_id: str | None = None,
        limit: int = 100,
    ) -> list[RetentionRecord]: ...

    @abc.abstractmethod
    async def delete_retention_record(self, record_id: str) -> bool: ...

    @abc.abstractmethod
    async def anonymize_retention_record(self, record_id: str, pseudonym: str) -> bool:
        """Replace the record's user_id with `pseudonym` and flag it anonymized."""

    @abc.abstractmethod
    async def retention_stats(self) -> RetentionStats: ...

    # ── Consent ───────────────────────────────────────────────────────────────

    @abc.abstractmethod
    async def insert_consent(self, consent: ConsentRecord) -> None: ...

    @abc.abstractmethod
    async def latest_consent(self, user_id: str, category: str) -> ConsentRecord | None: ...

    @abc.abstractmethod
    async def delete_consents(self, user_id: str) -> int: ...


class MemoryBackend(StorageBackend):
    """
    Process-local backend for development and tests.

    Every method runs without awaiting, so each call is atomic with respect to
    other coroutines on the same event loop.
    """

    def __init__(self):
        self.checkpoints: dict[str, CheckpointRow] = {}
        self.records: dict[str, RetentionRecord] = {}
        self.consents: list[ConsentRecord] = []

    async def ping(self) -> None:
        pass

    async def get_checkpoint(self, run_id: str) -> CheckpointRow | None:
        return self.checkpoints.get(run_id)

    async def upsert_checkpoint(self, run_id, user_id, state_ciphertext, state_size, now) -> int:
        existing = self.checkpoints.get(run_id)
        version = existing.version + 1 if existing else 1
        self.checkpoints[run_id] = CheckpointRow(
            run_id=run_id,
            user_id=user_id,
            state_ciphertext=state_ciphertext,
            state_size=state_size,
            version=version,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        return version

    async def scan_checkpoints(
        self, *, user_id=None, updated_before=None, updated_after=None, after_run_id=None, limit=100
    ) -> list[CheckpointRow]:
        rows = sorted(self.checkpoints.values(), key=lambda r: r.run_id)
        selected = []
        for row in rows:
            if after_run_id is not None and row.run_id <= after_run_id:
                continue
            if user_id is not None and row.user_id != user_id:
                continue
            if updated_before is not None and row.updated_at >= updated_before:
                continue
            if updated_after is not None and row.updated_at <= updated_after:
                continue
            selected.append(row)
            if len(selected) >= limit:
                break
        return selected

    async def delete_checkpoint(self, run_id: str) -> bool:
        return self.checkpoints.pop(run_id, None) is not None

    async def delete_checkpoints_updated_before(self, cutoff: datetime) -> int:
        expired = [run_id for run_id, row in self.checkpoints.items() if row.updated_at < cutoff]
        for run_id in expired:
            del self.checkpoints[run_id]
        return len(expired)

    async def checkpoint_stats(self) -> CheckpointStats:
        rows = list(self.checkpoints.values())
        if not rows:
            return CheckpointStats()
        return CheckpointStats(
            total_checkpoints=len(rows),
            oldest_checkpoint=min(r.created_at for r in rows),
            newest_checkpoint=max(r.updated_at for r in rows),
            average_state_size=sum(r.state_size for r in rows) / len(rows),
            checkpoints_by_user=dict(Counter(r.user_id for r in rows)),
        )

    async def insert_retention_record(self, record: RetentionRecord) -> bool:
        if record.record_id in self.records:
            return False
        self.records[record.record_id] = record
        return True

    async def scan_retention_records(self, *, user_id=None, after_record_id=None, limit=100):
        rows = sorted(self.records.values(), key=lambda r: r.record_id)
        selected = []
        for row in rows:
            if after_record_id is not None and row.record_id <= after_record_id:
                continue
            if user_id is not None and row.user_id != user_id:
                continue
            selected.append(row)
            if len(selected) >= limit:
                break
        return selected

    async def delete_retention_record(self, record_id: str) -> bool:
        return self.records.pop(record_id, None) is not None

    async def anonymize_retention_record(self, record_id: str, pseudonym: str) -> bool:
        record = self.records.get(record_id)
        if record is None:
            return False
        self.records[record_id] = record.model_copy(update={"user_id": pseudonym, "anonymized": True})
        return True

    async def retention_stats(self) -> RetentionStats:
        rows = list(self.records.values())
        if not rows:
            return RetentionStats()
        return RetentionStats(
            total_records=len(rows),
            records_by_category=dict(Counter(r.category for r in rows)),
            records_by_user=dict(Counter(r.user_id for r in rows)),
            oldest_record=min(r.created_at for r in rows),
            newest_record=max(r.created_at for r in rows),
            anonymized_records=sum(1 for r in rows if r.anonymized),
        )

    async def insert_consent(self, consent: ConsentRecord) -> None:
        self.consents.append(consent)

    async def latest_consent(self, user_id: str, category: str) -> ConsentRecord | None:
        matching = [c for c in self.consents if c.user_id == user_id and c.category == category]
        if not matching:
            return None
        return max(reversed(matching), key=lambda c: c.granted_at)

    async def delete_consents(self, user_id: str) -> int:
        before = len(self.consents)
        self.consents = [c for c in self.consents if c.user_id != user_id]
        return before - len(self.consents)
