"""Pytest fixtures for testing."""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest
import pytest_asyncio

from offline_queue.clock import VirtualClock
from offline_queue.config import Settings
from offline_queue.errors import StorageError
from offline_queue.logging_config import trace_id_var
from offline_queue.manager import OfflineQueueManager
from offline_queue.models import Entity, MutationType, QueuedMutation, apply_to_entity
from offline_queue.notifier import QueueNotifier
from offline_queue.remote import ApplyConflict, ApplyError, ApplySuccess
from offline_queue.store import MemoryQueueStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeRemoteAuthority:
    """In-memory remote authority.

    Deduplicates by idempotency key, rejects writes older than the stored
    version with a conflict, and records every call in order. ``script()``
    queues canned results (or exceptions to raise) for the next calls.
    """

    def __init__(self) -> None:
        self.entities: dict[str, Entity] = {}
        self.calls: list[QueuedMutation] = []
        self.applied: list[QueuedMutation] = []
        self._applied_keys: set[str] = set()
        self._script: list = []
        self.gate: asyncio.Event | None = None
        # Applied but the response is held back, as if the connection hung.
        self.response_gate: asyncio.Event | None = None
        self.delay: float = 0.0
        self.active = 0
        self.max_active = 0
        self.active_entities: set[str] = set()
        self.entity_overlap = False
        self.fetches: list[str] = []
        self.trace_ids: list[str | None] = []

    def seed(self, entity: Entity) -> None:
        self.entities[entity.id] = entity

    def script(self, *results) -> None:
        self._script.extend(results)

    def reset(self) -> None:
        self.calls.clear()
        self.applied.clear()
        self._script.clear()

    async def apply_mutation(self, mutation: QueuedMutation):
        self.calls.append(mutation.model_copy(deep=True))
        self.trace_ids.append(trace_id_var.get())
        entity_id = mutation.target_entity_id
        if entity_id in self.active_entities:
            self.entity_overlap = True
        self.active_entities.add(entity_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            if self._script:
                result = self._script.pop(0)
                if isinstance(result, BaseException):
                    raise result
                if result is not None:
                    return result
            result = self._apply(mutation)
            if self.response_gate is not None:
                await self.response_gate.wait()
            return result
        finally:
            self.active -= 1
            self.active_entities.discard(entity_id)

    def _apply(self, mutation: QueuedMutation):
        if mutation.idempotency_key in self._applied_keys:
            return ApplySuccess(self.entities.get(mutation.target_entity_id))

        written_at = mutation.resubmitted_at or mutation.timestamp
        current = self.entities.get(mutation.target_entity_id)
        if current is not None and current.updated_at > written_at:
            return ApplyConflict(remote=current)

        if mutation.type is MutationType.DELETE:
            self.entities.pop(mutation.target_entity_id, None)
            entity = None
        else:
            entity = apply_to_entity(current, mutation, written_at)
            if entity is None:
                # Update against something that no longer exists.
                return ApplyConflict(remote=None)
            self.entities[entity.id] = entity

        self._applied_keys.add(mutation.idempotency_key)
        self.applied.append(mutation.model_copy(deep=True))
        return ApplySuccess(entity)

    async def fetch_entity(self, entity_id: str) -> Entity | None:
        self.fetches.append(entity_id)
        return self.entities.get(entity_id)


class FlakyQueueStore(MemoryQueueStore):
    """Memory store whose writes fail while ``failing`` is set."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failing = False
        self.failed_writes = 0

    async def _write(self, data: str) -> None:
        if self.failing:
            self.failed_writes += 1
            raise StorageError("disk full")
        await super()._write(data)


class FakeRedis:
    """Just enough of ``redis.asyncio.Redis`` for the queue store."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.closed = False
        self.fail_with: Exception | None = None

    async def get(self, key: str) -> str | None:
        if self.fail_with:
            raise self.fail_with
        return self.data.get(key)

    async def set(self, key: str, value: str) -> bool:
        if self.fail_with:
            raise self.fail_with
        self.data[key] = value
        return True

    async def aclose(self) -> None:
        self.closed = True


def make_entity(entity_id: str = "item-1", *, updated_at: datetime = T0, **fields) -> Entity:
    data = {"name": "Milk", "quantity": 1, "gotten": False, "category": "Dairy"}
    data.update(fields)
    return Entity(id=entity_id, updated_at=updated_at, **data)


def transient(message: str = "HTTP 503") -> ApplyError:
    return ApplyError(message, transient=True, status_code=503)


@pytest.fixture
def anyio_backend():
    """Configure pytest-anyio to only use asyncio backend."""
    return "asyncio"


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock(T0 + timedelta(hours=1))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        storage_backend="memory",
        max_retries=3,
        backoff_base_seconds=1.0,
        backoff_max_seconds=60.0,
        parallelism=10,
        remote_timeout=5.0,
        status_debounce_seconds=0,
        success_retention_seconds=3600,
    )


@pytest.fixture
def remote() -> FakeRemoteAuthority:
    return FakeRemoteAuthority()


@pytest.fixture
def store(clock) -> MemoryQueueStore:
    return MemoryQueueStore(clock=clock)


@pytest_asyncio.fixture
async def manager(store, remote, settings, clock):
    """A started, online queue manager without the background scheduler."""
    mgr = OfflineQueueManager(
        store,
        remote,
        settings=settings,
        clock=clock,
        notifier=QueueNotifier(debounce_seconds=0),
    )
    await mgr.start(run_scheduler=False)
    mgr.set_online(True)
    yield mgr
    await mgr.stop()


@pytest_asyncio.fixture
async def make_manager(store, remote, settings, clock):
    """Factory for extra managers with settings overrides; stopped on teardown."""
    created: list[OfflineQueueManager] = []

    async def factory(*, queue_store=None, online=True, run_scheduler=False, **overrides):
        mgr = OfflineQueueManager(
            queue_store or store,
            remote,
            settings=settings.model_copy(update=overrides),
            clock=clock,
            notifier=QueueNotifier(debounce_seconds=0),
        )
        await mgr.start(run_scheduler=run_scheduler)
        mgr.set_online(online)
        created.append(mgr)
        return mgr

    yield factory
    for mgr in created:
        await mgr.stop()
