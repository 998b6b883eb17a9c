"""
Data retention: consent, expiry and deletion for stored conversation data.

Every artifact the engine stores (today: one checkpoint per chat run) is
described by a RetentionRecord {record_id, user_id, category, created_at}.
A record expires at created_at + N days, where N comes from the user's most
recent consent for that category, or from the category's default policy
when no consent exists.

Deleting a record first deletes the artifact behind it (via the category's
deleter), then the record itself. Deleters must treat "already gone" as
success so cleanup can run alongside live conversations. Expired
analytics records are pseudonymized rather than deleted.

With require_consent on, chat_history and user_data records can only be
registered while the user holds an unexpired consent grant.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable

from chat_orchestrator.core.checkpointer import CheckpointStore
from chat_orchestrator.core.errors import (
    CleanupIncompleteError,
    ConsentRequiredError,
    ConsentValidationError,
    RetentionError,
    StorageError,
)
from chat_orchestrator.core.graph_state import utcnow
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.core.telemetry import Telemetry
from chat_orchestrator.storage.backend import StorageBackend
from chat_orchestrator.storage.models import ConsentRecord, RetentionRecord, RetentionStats

log = get_logger(__name__)

MIN_CONSENT_DAYS = 1
MAX_CONSENT_DAYS = 365 * 5
_SCAN_PAGE_SIZE = 200
_MAX_DELETION_PASSES = 10


class DataCategory(str, Enum):
    CHAT_HISTORY = "chat_history"
    USER_DATA = "user_data"
    SYSTEM_LOGS = "system_logs"
    ANALYTICS_DATA = "analytics_data"


DEFAULT_RETENTION_DAYS: dict[str, int] = {
    DataCategory.CHAT_HISTORY.value: 30,
    DataCategory.USER_DATA.value: 90,
    DataCategory.SYSTEM_LOGS.value: 14,
    DataCategory.ANALYTICS_DATA.value: 365,
}

# Records in these categories may only be stored under a current consent grant
CONSENT_REQUIRED_CATEGORIES = frozenset({DataCategory.CHAT_HISTORY.value, DataCategory.USER_DATA.value})

# Kept in pseudonymized form once expired instead of being deleted
ANONYMIZE_AFTER_RETENTION = frozenset({DataCategory.ANALYTICS_DATA.value})

ArtifactDeleter = Callable[[RetentionRecord], Awaitable[None]]
ArtifactAnonymizer = Callable[[RetentionRecord], Awaitable[None]]


class DataRetentionManager:
    def __init__(
        self,
        backend: StorageBackend,
        store: CheckpointStore,
        *,
        default_retention_days: int = 30,
        require_consent: bool = False,
        telemetry: Telemetry | None = None,
    ):
        self._backend = backend
        self._store = store
        self._default_days = default_retention_days
        self._require_consent = require_consent
        self._telemetry = telemetry or Telemetry()
        self._deleters: dict[str, ArtifactDeleter] = {
            DataCategory.CHAT_HISTORY.value: self._delete_checkpoint,
        }
        self._anonymizers: dict[str, ArtifactAnonymizer] = {}

    def register_deleter(self, category: str, deleter: ArtifactDeleter) -> None:
        self._deleters[category] = deleter

    def register_anonymizer(self, category: str, anonymizer: ArtifactAnonymizer) -> None:
        self._anonymizers[category] = anonymizer

    def retention_days(self, category: str) -> int:
        return DEFAULT_RETENTION_DAYS.get(category, self._default_days)

    def requires_consent(self, category: str) -> bool:
        return self._require_consent and category in CONSENT_REQUIRED_CATEGORIES

    # ── Records ───────────────────────────────────────────────────────────────

    async def register_data_record(
        self,
        user_id: str,
        category: str,
        created_at: datetime | None = None,
        *,
        record_id: str | None = None,
    ) -> RetentionRecord:
        """
        Describe a stored artifact. Re-registering an existing record_id is a no-op.
        Raises ConsentRequiredError for a consent-gated category without a current grant.
        """
        await self.ensure_consent(user_id, category)
        record = RetentionRecord(
            record_id=record_id or str(uuid.uuid4()),
            user_id=user_id,
            category=category,
            created_at=created_at or utcnow(),
        )
        created = await self._backend.insert_retention_record(record)
        if created:
            log.debug("retention_record_registered", record_id=record.record_id, category=category)
        return record

    async def get_stats(self) -> RetentionStats:
        try:
            return await self._backend.retention_stats()
        except StorageError as exc:
            raise RetentionError(f"retention stats unavailable: {exc}") from exc

    # ── Consent ───────────────────────────────────────────────────────────────

    async def record_consent(self, user_id: str, category: str, duration_days: int) -> bool:
        """
        Store a new consent grant. Older grants for the same (user, category)
        stay in history and are superseded by this one.
        """
        if isinstance(duration_days, bool) or not isinstance(duration_days, int):
            raise ConsentValidationError("durationDays must be an integer")
        if not MIN_CONSENT_DAYS <= duration_days <= MAX_CONSENT_DAYS:
            raise ConsentValidationError(
                f"durationDays must be between {MIN_CONSENT_DAYS} and {MAX_CONSENT_DAYS}, got {duration_days}"
            )
        if not user_id or not category:
            raise ConsentValidationError("userId and category are required")

        await self._backend.insert_consent(
            ConsentRecord(user_id=user_id, category=category, duration_days=duration_days)
        )
        log.info("consent_recorded", user_id=user_id, category=category, duration_days=duration_days)
        return True

    async def has_consent(self, user_id: str, category: str) -> bool:
        """True when the user's latest grant for `category` has not run out yet."""
        consent = await self._backend.latest_consent(user_id, category)
        return consent is not None and consent.granted_at + timedelta(days=consent.duration_days) > utcnow()

    async def ensure_consent(self, user_id: str, category: str) -> None:
        if self.requires_consent(category) and not await self.has_consent(user_id, category):
            log.warning("consent_missing", user_id=user_id, category=category)
            raise ConsentRequiredError(user_id, category)

    async def expiry_for(self, record: RetentionRecord, consent_cache: dict | None = None) -> datetime:
        key = (record.user_id, record.category)
        if consent_cache is not None and key in consent_cache:
            consent = consent_cache[key]
        else:
            consent = await self._backend.latest_consent(record.user_id, record.category)
            if consent_cache is not None:
                consent_cache[key] = consent
        days = consent.duration_days if consent else self.retention_days(record.category)
        return record.created_at + timedelta(days=days)

    # ── Deletion ──────────────────────────────────────────────────────────────

    async def _delete_checkpoint(self, record: RetentionRecord) -> None:
        await self._store.delete(record.record_id)

    async def _delete_record(self, record: RetentionRecord) -> None:
        deleter = self._deleters.get(record.category)
        if deleter is not None:
            await deleter(record)
        await self._backend.delete_retention_record(record.record_id)

    async def _anonymize_record(self, record: RetentionRecord) -> None:
        anonymizer = self._anonymizers.get(record.category)
        if anonymizer is not None:
            await anonymizer(record)
        await self._backend.anonymize_retention_record(record.record_id, f"anon-{uuid.uuid4().hex}")

    async def _scan_records(self, user_id: str | None = None):
        after = None
        while True:
            page = await self._backend.scan_retention_records(
                user_id=user_id, after_record_id=after, limit=_SCAN_PAGE_SIZE
            )
            if not page:
                return
            for record in page:
                yield record
            after = page[-1].record_id
            if len(page) < _SCAN_PAGE_SIZE:
                return

    async def _scan_checkpoint_ids(self, user_id: str):
        after = None
        while True:
            page = await self._backend.scan_checkpoints(
                user_id=user_id, after_run_id=after, limit=_SCAN_PAGE_SIZE
            )
            if not page:
                return
            for row in page:
                yield row.run_id
            after = page[-1].run_id
            if len(page) < _SCAN_PAGE_SIZE:
                return

    async def cleanup_expired_data(self) -> int:
        """
        Delete every expired record and its artifact. Categories in
        ANONYMIZE_AFTER_RETENTION are pseudonymized instead and are not counted
        as deleted. Each record is handled independently; failures are
        collected and reported once the whole batch has been attempted.
        """
        now = utcnow()
        deleted = 0
        anonymized = 0
        failed: list[str] = []
        consent_cache: dict = {}

        async for record in self._scan_records():
            if record.anonymized:
                continue
            try:
                if await self.expiry_for(record, consent_cache) > now:
                    continue
                if record.category in ANONYMIZE_AFTER_RETENTION:
                    await self._anonymize_record(record)
                    anonymized += 1
                else:
                    await self._delete_record(record)
                    deleted += 1
            except Exception as exc:
                log.error(
                    "retention_record_cleanup_failed",
                    record_id=record.record_id,
                    category=record.category,
                    error=str(exc),
                )
                failed.append(record.record_id)

        log.info("retention_cleanup", deleted=deleted, anonymized=anonymized, failed=len(failed))
        self._telemetry.increment("retention.expired_deleted", deleted)
        self._telemetry.increment("retention.anonymized", anonymized)
        if failed:
            raise CleanupIncompleteError("cleanup_expired_data", deleted, failed)
        return deleted

    async def delete_user_data(self, user_id: str) -> int:
        """
        Remove everything stored for `user_id`: retention records with their
        artifacts, checkpoints that were never registered, and consent history.
        Scans repeat until one finds nothing left to delete.
        """
        deleted = 0
        failed: set[str] = set()

        for attempt in range(1, _MAX_DELETION_PASSES + 1):
            removed_this_pass = 0
            failed.clear()

            async for record in self._scan_records(user_id=user_id):
                try:
                    await self._delete_record(record)
                    removed_this_pass += 1
                except Exception as exc:
                    log.error("user_record_delete_failed", record_id=record.record_id, error=str(exc))
                    failed.add(record.record_id)

            # Raw rows, not store.list(): unreadable checkpoints must go too
            orphans = [run_id async for run_id in self._scan_checkpoint_ids(user_id)]
            for run_id in orphans:
                try:
                    if await self._store.delete(run_id):
                        removed_this_pass += 1
                except Exception as exc:
                    log.error("user_checkpoint_delete_failed", run_id=run_id, error=str(exc))
                    failed.add(run_id)

            deleted += removed_this_pass
            if removed_this_pass == 0 and not failed:
                break
            log.debug("user_data_pass", user_id=user_id, attempt=attempt, removed=removed_this_pass)

        if await self._user_has_rows(user_id):
            failed.add(f"user:{user_id}")

        consents = await self._backend.delete_consents(user_id)
        log.info("user_data_deleted", user_id=user_id, deleted=deleted, consents=consents)
        self._telemetry.increment("retention.user_deletions")
        if failed:
            raise CleanupIncompleteError("delete_user_data", deleted, sorted(failed))
        return deleted

    async def _user_has_rows(self, user_id: str) -> bool:
        records = await self._backend.scan_retention_records(user_id=user_id, limit=1)
        checkpoints = await self._backend.scan_checkpoints(user_id=user_id, limit=1)
        return bool(records or checkpoints)
