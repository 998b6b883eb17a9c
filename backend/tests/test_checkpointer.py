from datetime import timedelta

import pytest

from chat_orchestrator.core.checkpointer import CheckpointStore
from chat_orchestrator.core.crypto import StateCipher
from chat_orchestrator.core.errors import CheckpointStoreError, CheckpointStoreUnavailable, StorageError
from chat_orchestrator.core.graph_state import utcnow
from chat_orchestrator.storage.backend import MemoryBackend
from chat_orchestrator.storage.models import CheckpointFilter

from conftest import make_state


def age(backend: MemoryBackend, run_id: str, seconds: float) -> None:
    row = backend.checkpoints[run_id]
    backend.checkpoints[run_id] = row.model_copy(update={"updated_at": utcnow() - timedelta(seconds=seconds)})


@pytest.mark.asyncio
async def test_put_then_get_round_trips_state(store):
    state = make_state("my secret question")

    await store.put("run-1", state)
    checkpoint = await store.get("run-1")

    assert checkpoint.run_id == "run-1"
    assert checkpoint.user_id == "user-1"
    assert checkpoint.version == 1
    assert checkpoint.state.messages[0].content == "my secret question"


@pytest.mark.asyncio
async def test_state_is_encrypted_at_rest(store, backend):
    await store.put("run-1", make_state("my secret question"))

    row = backend.checkpoints["run-1"]
    assert "secret" not in row.state_ciphertext
    assert row.state_size == len(row.state_ciphertext)


@pytest.mark.asyncio
async def test_version_increments_on_every_write(store):
    state = make_state()
    for _ in range(3):
        await store.put("run-1", state)

    checkpoint = await store.get("run-1")
    assert checkpoint.version == 3
    assert checkpoint.created_at <= checkpoint.updated_at


@pytest.mark.asyncio
async def test_missing_run_is_none(store):
    assert await store.get("nope") is None


@pytest.mark.asyncio
async def test_checkpoint_under_other_key_reads_as_absent(store, backend):
    await store.put("run-1", make_state())
    other = CheckpointStore(backend, StateCipher.from_base64(StateCipher.generate_key()))

    assert await other.get("run-1") is None


@pytest.mark.asyncio
async def test_ciphertext_moved_to_another_run_reads_as_absent(store, backend):
    await store.put("run-1", make_state())
    backend.checkpoints["run-2"] = backend.checkpoints["run-1"].model_copy(update={"run_id": "run-2"})

    assert await store.get("run-2") is None


@pytest.mark.asyncio
async def test_list_pages_through_matching_checkpoints(store):
    for i in range(5):
        await store.put(f"run-{i}", make_state(user_id="alice"))
    await store.put("run-bob", make_state(user_id="bob"))

    found = [c.run_id async for c in store.list(CheckpointFilter(user_id="alice", page_size=2))]

    assert found == [f"run-{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_list_skips_unreadable_rows(store, backend):
    await store.put("run-1", make_state())
    await store.put("run-2", make_state())
    backend.checkpoints["run-1"] = backend.checkpoints["run-1"].model_copy(update={"state_ciphertext": "not-base64!"})

    found = [c.run_id async for c in store.list()]

    assert found == ["run-2"]


@pytest.mark.asyncio
async def test_list_filters_by_update_time(store, backend):
    await store.put("old", make_state())
    await store.put("new", make_state())
    age(backend, "old", 7200)

    found = [c.run_id async for c in store.list(CheckpointFilter(updated_before=utcnow() - timedelta(hours=1)))]

    assert found == ["old"]


@pytest.mark.asyncio
async def test_cleanup_removes_only_stale_checkpoints(store, backend):
    await store.put("old", make_state())
    await store.put("new", make_state())
    age(backend, "old", 7200)

    assert await store.cleanup() == 1
    assert set(backend.checkpoints) == {"new"}
    assert await store.cleanup(max_age_seconds=60) == 0


@pytest.mark.asyncio
async def test_ttl_applies_at_cleanup_not_on_read(store, backend):
    await store.put("old", make_state(user_id="alice"))
    age(backend, "old", 7200)

    assert (await store.get("old")).run_id == "old"
    assert await store.owner("old") == "alice"
    assert await store.owner("missing") is None

    await store.cleanup()

    assert await store.get("old") is None


@pytest.mark.asyncio
async def test_delete_is_idempotent(store):
    await store.put("run-1", make_state())

    assert await store.delete("run-1") is True
    assert await store.delete("run-1") is False


@pytest.mark.asyncio
async def test_stats(store):
    await store.put("run-1", make_state(user_id="alice"))
    await store.put("run-2", make_state(user_id="alice"))
    await store.put("run-3", make_state(user_id="bob"))

    stats = await store.get_stats()

    assert stats.total_checkpoints == 3
    assert stats.checkpoints_by_user == {"alice": 2, "bob": 1}
    assert stats.average_state_size > 0
    assert stats.oldest_checkpoint <= stats.newest_checkpoint


@pytest.mark.asyncio
async def test_stats_on_empty_store(store):
    stats = await store.get_stats()

    assert stats.total_checkpoints == 0
    assert stats.oldest_checkpoint is None


class DownBackend(MemoryBackend):
    async def ping(self):
        raise StorageError("connection refused")

    async def get_checkpoint(self, run_id):
        raise StorageError("connection refused")


@pytest.mark.asyncio
async def test_initialize_reports_unreachable_backend(cipher):
    store = CheckpointStore(DownBackend(), cipher)

    with pytest.raises(CheckpointStoreUnavailable):
        await store.initialize()


@pytest.mark.asyncio
async def test_backend_errors_surface_as_checkpoint_store_errors(cipher):
    store = CheckpointStore(DownBackend(), cipher)

    with pytest.raises(CheckpointStoreError):
        await store.get("run-1")


@pytest.mark.asyncio
async def test_initialize_is_idempotent(store):
    await store.initialize()
    await store.initialize()
