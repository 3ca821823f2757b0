from __future__ import annotations

import json
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from offline_queue.conflict_log import ConflictLog
from offline_queue.config import Settings
from offline_queue.detector import detect_conflict
from offline_queue.errors import StorageError
from offline_queue.models import MutationStatus, ResolutionStrategy, create_add_mutation
from offline_queue.store import (
    CURRENT_VERSION,
    FileQueueStore,
    MemoryQueueStore,
    QueueDocument,
    RedisQueueStore,
    create_store,
    migrate,
    reclaim,
)
from tests.conftest import T0, FakeRedis, make_entity


def _mutations(count: int, *, status: MutationStatus = MutationStatus.PENDING, at=T0):
    result = []
    for i in range(count):
        mutation = create_add_mutation(f"item {i}", entity_id=f"e{i}", timestamp=at)
        mutation.sequence = i
        mutation.status = status
        if status is MutationStatus.SUCCESS:
            mutation.completed_at = at
        result.append(mutation)
    return result


class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_save_of_load_is_stable(self, clock) -> None:
        store = MemoryQueueStore(clock=clock)
        document = QueueDocument(mutations=_mutations(3))
        await store.save(document)
        first = store.data

        await store.save(await store.load())
        assert store.data == first

    @pytest.mark.asyncio
    async def test_empty_store_loads_empty_document(self) -> None:
        document = await MemoryQueueStore().load()
        assert document.version == CURRENT_VERSION
        assert document.mutations == []

    @pytest.mark.asyncio
    async def test_conflict_log_is_persisted(self, clock) -> None:
        log = ConflictLog()
        conflict = detect_conflict(make_entity(quantity=1), make_entity(quantity=2))
        log.record("m1", conflict, ResolutionStrategy.LAST_WRITE_WINS, conflict.remote, automatic=True, resolved_at=T0)
        store = MemoryQueueStore(clock=clock)
        await store.save(QueueDocument(conflict_log=log.entries))

        loaded = await store.load()
        assert [e.conflict_id for e in loaded.conflict_log] == ["m1"]


class TestMigration:
    def test_bare_list_is_version_one(self) -> None:
        raw = [
            {
                "id": "m1",
                "type": "update",
                "payload": {"id": "item-1", "quantity": 2},
                "timestamp": 1704067200000,
                "retryCount": 2,
                "status": "processing",
            }
        ]
        migrated = QueueDocument.model_validate(migrate(raw))
        mutation = migrated.mutations[0]

        assert migrated.version == CURRENT_VERSION
        assert mutation.target_entity_id == "item-1"
        assert mutation.payload == {"quantity": 2}
        assert mutation.retry_count == 2
        assert mutation.status is MutationStatus.IN_FLIGHT
        assert mutation.timestamp == T0

    def test_newer_version_is_refused(self) -> None:
        with pytest.raises(StorageError):
            migrate({"version": CURRENT_VERSION + 1, "mutations": []})

    @pytest.mark.asyncio
    async def test_load_applies_migration(self) -> None:
        raw = {"version": 1, "mutations": [{"id": "m1", "type": "delete", "targetEntityId": "a"}]}
        store = MemoryQueueStore(json.dumps(raw))
        document = await store.load()
        assert document.mutations[0].target_entity_id == "a"

    @pytest.mark.asyncio
    async def test_corrupt_document_is_quarantined(self) -> None:
        store = MemoryQueueStore("{not json")
        document = await store.load()
        assert document.mutations == []
        assert store.quarantined == ["{not json"]


class TestReclaim:
    def test_within_limits_is_untouched(self) -> None:
        document = QueueDocument(mutations=_mutations(5))
        report = reclaim(document, now=T0, quota_bytes=10**7, hard_cap=10, retention_seconds=60)
        assert not report.changed
        assert len(document.mutations) == 5

    def test_old_successes_go_first(self) -> None:
        old = _mutations(4, status=MutationStatus.SUCCESS, at=T0)
        for i, m in enumerate(old):
            m.id = f"done-{i}"
        fresh = _mutations(4, at=T0 + timedelta(hours=2))
        document = QueueDocument(mutations=old + fresh)

        report = reclaim(
            document, now=T0 + timedelta(hours=2), quota_bytes=10**7, hard_cap=5, retention_seconds=3600
        )
        assert sorted(report.dropped_success_ids) == [f"done-{i}" for i in range(4)]
        assert report.overflow is None
        assert len(document.mutations) == 4

    def test_expired_conflict_log_entries_before_pending(self) -> None:
        log = ConflictLog()
        conflict = detect_conflict(make_entity(quantity=1), make_entity(quantity=2))
        for _ in range(50):
            log.record("m", conflict, ResolutionStrategy.LAST_WRITE_WINS, conflict.remote, automatic=True, resolved_at=T0)
        document = QueueDocument(mutations=_mutations(2), conflict_log=log.entries)
        size_without_log = len(QueueDocument(mutations=document.mutations).model_dump_json())

        report = reclaim(
            document,
            now=T0 + timedelta(days=2),
            quota_bytes=size_without_log + 100,
            hard_cap=500,
            retention_seconds=3600,
        )
        assert len(report.dropped_log_ids) == 50
        assert report.overflow is None
        assert len(document.mutations) == 2

    def test_overflow_drops_oldest_pending_beyond_cap(self) -> None:
        document = QueueDocument(mutations=_mutations(600))
        oldest_ids = [m.id for m in document.mutations[:100]]
        report = reclaim(document, now=T0, quota_bytes=10**9, hard_cap=500, retention_seconds=3600)

        assert report.overflow is not None
        assert report.overflow.dropped_ids == oldest_ids
        assert len(document.mutations) == 500
        assert [m.sequence for m in document.mutations] == list(range(100, 600))


class TestFileQueueStore:
    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path, clock) -> None:
        path = tmp_path / "queue" / "queue.json"
        await FileQueueStore(path, clock=clock).save(QueueDocument(mutations=_mutations(2)))

        reloaded = await FileQueueStore(path, clock=clock).load()
        assert [m.target_entity_id for m in reloaded.mutations] == ["e0", "e1"]
        assert not list(path.parent.glob(".*.tmp"))

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path) -> None:
        document = await FileQueueStore(tmp_path / "absent.json").load()
        assert document.mutations == []

    @pytest.mark.asyncio
    async def test_unreadable_file_is_moved_aside(self, tmp_path, clock) -> None:
        path = tmp_path / "queue.json"
        path.write_text("[[[", encoding="utf-8")
        document = await FileQueueStore(path, clock=clock).load()

        assert document.mutations == []
        assert not path.exists()
        assert len(list(tmp_path.glob("queue.json.corrupt-*"))) == 1


class TestRedisQueueStore:
    @pytest.mark.asyncio
    async def test_document_lives_under_one_key(self, clock) -> None:
        client = FakeRedis()
        store = RedisQueueStore(client, key="q:test", clock=clock)
        await store.save(QueueDocument(mutations=_mutations(1)))

        assert list(client.data) == ["q:test"]
        assert len((await store.load()).mutations) == 1

    @pytest.mark.asyncio
    async def test_redis_errors_become_storage_errors(self) -> None:
        client = FakeRedis()
        client.fail_with = RedisConnectionError("down")
        store = RedisQueueStore(client)
        with pytest.raises(StorageError):
            await store.load()
        with pytest.raises(StorageError):
            await store.save(QueueDocument())

    @pytest.mark.asyncio
    async def test_close_closes_client(self) -> None:
        client = FakeRedis()
        await RedisQueueStore(client).close()
        assert client.closed


def test_create_store_selects_backend(tmp_path) -> None:
    settings = Settings(_env_file=None, storage_backend="file", queue_path=str(tmp_path / "q.json"), hard_cap=7)
    store = create_store(settings)
    assert isinstance(store, FileQueueStore)
    assert store.hard_cap == 7

    memory = create_store(Settings(_env_file=None, storage_backend="memory"))
    assert isinstance(memory, MemoryQueueStore)
