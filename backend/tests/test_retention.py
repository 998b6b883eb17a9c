from datetime import timedelta

import pytest

from chat_orchestrator.core.errors import CleanupIncompleteError, ConsentRequiredError, ConsentValidationError
from chat_orchestrator.core.graph_state import utcnow
from chat_orchestrator.retention.manager import (
    DEFAULT_RETENTION_DAYS,
    DataCategory,
    DataRetentionManager,
)
from chat_orchestrator.storage.models import CheckpointRow, ConsentRecord

from conftest import make_state

CHAT = DataCategory.CHAT_HISTORY.value
ANALYTICS = DataCategory.ANALYTICS_DATA.value


def days_ago(days: int):
    return utcnow() - timedelta(days=days)


# ── Consent ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("days", [0, -1, 1826])
async def test_consent_out_of_range_is_rejected(retention, backend, days):
    with pytest.raises(ConsentValidationError):
        await retention.record_consent("alice", CHAT, days)
    assert backend.consents == []


@pytest.mark.asyncio
@pytest.mark.parametrize("days", [1, 30, 1825])
async def test_consent_in_range_is_stored(retention, backend, days):
    assert await retention.record_consent("alice", CHAT, days) is True
    assert backend.consents[-1].duration_days == days


@pytest.mark.asyncio
@pytest.mark.parametrize("days", [True, 30.0, "30"])
async def test_consent_requires_integer_days(retention, days):
    with pytest.raises(ConsentValidationError):
        await retention.record_consent("alice", CHAT, days)


@pytest.mark.asyncio
async def test_consent_requires_user_and_category(retention):
    with pytest.raises(ConsentValidationError):
        await retention.record_consent("", CHAT, 30)


# ── Expiry ────────────────────────────────────────────────────────────────────

def test_category_defaults(retention):
    assert DEFAULT_RETENTION_DAYS == {
        "chat_history": 30,
        "user_data": 90,
        "system_logs": 14,
        "analytics_data": 365,
    }
    assert retention.retention_days("unknown_category") == 30


@pytest.mark.asyncio
async def test_expiry_uses_latest_consent(retention):
    record = await retention.register_data_record("alice", CHAT, days_ago(0), record_id="r1")
    assert await retention.expiry_for(record) == record.created_at + timedelta(days=30)

    await retention.record_consent("alice", CHAT, 90)
    await retention.record_consent("alice", CHAT, 7)

    assert await retention.expiry_for(record) == record.created_at + timedelta(days=7)


# ── Cleanup ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cleanup_deletes_expired_records_and_their_checkpoints(retention, store, backend):
    await store.put("old-run", make_state(user_id="alice"))
    await store.put("new-run", make_state(user_id="alice"))
    await retention.register_data_record("alice", CHAT, days_ago(40), record_id="old-run")
    await retention.register_data_record("alice", CHAT, days_ago(10), record_id="new-run")

    assert await retention.cleanup_expired_data() == 1
    assert set(backend.records) == {"new-run"}
    assert set(backend.checkpoints) == {"new-run"}

    assert await retention.cleanup_expired_data() == 0


@pytest.mark.asyncio
async def test_consent_extends_retention(retention, backend):
    await retention.register_data_record("alice", CHAT, days_ago(40), record_id="r-alice")
    await retention.register_data_record("bob", CHAT, days_ago(40), record_id="r-bob")
    await retention.record_consent("alice", CHAT, 90)

    assert await retention.cleanup_expired_data() == 1
    assert set(backend.records) == {"r-alice"}


@pytest.mark.asyncio
async def test_cleanup_tolerates_artifact_already_gone(retention, backend):
    await retention.register_data_record("alice", CHAT, days_ago(40), record_id="never-checkpointed")

    assert await retention.cleanup_expired_data() == 1
    assert backend.records == {}


@pytest.mark.asyncio
async def test_cleanup_reports_partial_failure_after_finishing_batch(retention, backend):
    async def flaky(record):
        if record.record_id == "bad":
            raise RuntimeError("object store timeout")

    retention.register_deleter(DataCategory.USER_DATA.value, flaky)
    for record_id in ("a", "bad", "c"):
        await retention.register_data_record("alice", DataCategory.USER_DATA.value, days_ago(100), record_id=record_id)

    with pytest.raises(CleanupIncompleteError) as excinfo:
        await retention.cleanup_expired_data()

    assert excinfo.value.deleted_count == 2
    assert excinfo.value.failed == ["bad"]
    assert set(backend.records) == {"bad"}


@pytest.mark.asyncio
async def test_register_is_idempotent(retention, backend):
    first = await retention.register_data_record("alice", CHAT, days_ago(40), record_id="run-1")
    await retention.register_data_record("alice", CHAT, days_ago(1), record_id="run-1")

    assert len(backend.records) == 1
    assert backend.records["run-1"].created_at == first.created_at


# ── Per-user deletion ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_delete_user_data_removes_everything_for_user(retention, store, backend):
    await store.put("run-1", make_state(user_id="alice"))
    await store.put("orphan", make_state(user_id="alice"))
    await store.put("bob-run", make_state(user_id="bob"))
    backend.checkpoints["garbled"] = CheckpointRow(
        run_id="garbled",
        user_id="alice",
        state_ciphertext="???",
        state_size=3,
        version=1,
        created_at=utcnow(),
        updated_at=utcnow(),
    )
    await retention.register_data_record("alice", CHAT, record_id="run-1")
    await retention.register_data_record("alice", DataCategory.USER_DATA.value, record_id="profile")
    await retention.register_data_record("bob", CHAT, record_id="bob-run")
    await retention.record_consent("alice", CHAT, 60)
    await retention.record_consent("bob", CHAT, 60)

    deleted = await retention.delete_user_data("alice")

    assert deleted == 4
    assert set(backend.checkpoints) == {"bob-run"}
    assert set(backend.records) == {"bob-run"}
    assert [c.user_id for c in backend.consents] == ["bob"]


@pytest.mark.asyncio
async def test_delete_user_data_for_unknown_user(retention):
    assert await retention.delete_user_data("nobody") == 0


@pytest.mark.asyncio
async def test_delete_user_data_reports_what_could_not_be_removed(retention, backend):
    async def stuck(record):
        raise RuntimeError("locked")

    retention.register_deleter(DataCategory.USER_DATA.value, stuck)
    await retention.register_data_record("alice", DataCategory.USER_DATA.value, record_id="profile")
    await retention.register_data_record("alice", DataCategory.SYSTEM_LOGS.value, record_id="log-1")

    with pytest.raises(CleanupIncompleteError) as excinfo:
        await retention.delete_user_data("alice")

    assert excinfo.value.deleted_count == 1
    assert "profile" in excinfo.value.failed
    assert set(backend.records) == {"profile"}


# ── Consent gate ──────────────────────────────────────────────────────────────

@pytest.fixture
def gated(backend, store):
    return DataRetentionManager(backend, store, require_consent=True)


@pytest.mark.asyncio
async def test_gated_category_requires_current_consent(gated, backend):
    with pytest.raises(ConsentRequiredError):
        await gated.register_data_record("alice", CHAT, record_id="run-1")
    assert backend.records == {}

    await gated.record_consent("alice", CHAT, 30)
    await gated.register_data_record("alice", CHAT, record_id="run-1")

    assert set(backend.records) == {"run-1"}


@pytest.mark.asyncio
async def test_expired_consent_no_longer_counts(gated, backend):
    await backend.insert_consent(ConsentRecord(user_id="alice", category=CHAT, duration_days=7, granted_at=days_ago(8)))

    assert await gated.has_consent("alice", CHAT) is False
    with pytest.raises(ConsentRequiredError):
        await gated.ensure_consent("alice", CHAT)


@pytest.mark.asyncio
async def test_ungated_categories_and_default_manager_skip_consent(gated, retention):
    await gated.register_data_record("alice", DataCategory.SYSTEM_LOGS.value, record_id="log-1")
    await retention.register_data_record("bob", CHAT, record_id="run-2")

    assert gated.requires_consent(DataCategory.SYSTEM_LOGS.value) is False
    assert gated.requires_consent(DataCategory.USER_DATA.value) is True
    assert retention.requires_consent(CHAT) is False


# ── Anonymization ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_expired_analytics_are_anonymized_not_deleted(retention, backend):
    seen = []

    async def scrub(record):
        seen.append(record.record_id)

    retention.register_anonymizer(ANALYTICS, scrub)
    await retention.register_data_record("alice", ANALYTICS, days_ago(400), record_id="events-1")
    await retention.register_data_record("alice", ANALYTICS, days_ago(10), record_id="events-2")

    assert await retention.cleanup_expired_data() == 0

    record = backend.records["events-1"]
    assert record.anonymized
    assert record.user_id.startswith("anon-")
    assert backend.records["events-2"].user_id == "alice"
    assert seen == ["events-1"]
    assert (await retention.get_stats()).anonymized_records == 1

    assert await retention.cleanup_expired_data() == 0
    assert seen == ["events-1"]


@pytest.mark.asyncio
async def test_anonymized_records_are_out_of_reach_of_user_deletion(retention, backend):
    await retention.register_data_record("alice", ANALYTICS, days_ago(400), record_id="events-1")
    await retention.cleanup_expired_data()

    assert await retention.delete_user_data("alice") == 0
    assert set(backend.records) == {"events-1"}


# ── Stats ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stats(retention):
    await retention.register_data_record("alice", CHAT, days_ago(3), record_id="r1")
    await retention.register_data_record("alice", DataCategory.USER_DATA.value, days_ago(1), record_id="r2")
    await retention.register_data_record("bob", CHAT, record_id="r3")

    stats = await retention.get_stats()

    assert stats.total_records == 3
    assert stats.records_by_category == {"chat_history": 2, "user_data": 1}
    assert stats.records_by_user == {"alice": 2, "bob": 1}
    assert stats.oldest_record < stats.newest_record


def test_manager_uses_configured_default(backend, store):
    manager = DataRetentionManager(backend, store, default_retention_days=45)

    assert manager.retention_days("custom") == 45
    assert manager.retention_days(CHAT) == 30
