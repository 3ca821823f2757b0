"""Persistent queue store backends.

The queue is persisted as one versioned document::

    {"version": 2, "mutations": [...], "conflict_log": [...]}

Older layouts are migrated on ``load()`` before the queue manager sees them.
On ``save()`` the document is checked against the storage quota and the
hard cap; reclamation runs in three steps (expired successes, expired
conflict-log entries, oldest pending mutations beyond the hard cap) and the
last step is reported to the caller as a :class:`QueueOverflow` warning.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import redis.asyncio as redis
from pydantic import BaseModel, Field, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from offline_queue.clock import Clock, SystemClock
from offline_queue.config import Settings
from offline_queue.conflict_log import ConflictLogEntry
from offline_queue.errors import QueueOverflow, StorageError
from offline_queue.models import MutationStatus, QueuedMutation

logger = logging.getLogger(__name__)

CURRENT_VERSION = 2


class QueueDocument(BaseModel):
    version: int = CURRENT_VERSION
    mutations: list[QueuedMutation] = Field(default_factory=list)
    conflict_log: list[ConflictLogEntry] = Field(default_factory=list)


@dataclass
class ReclaimReport:
    dropped_success_ids: list[str] = field(default_factory=list)
    dropped_log_ids: list[str] = field(default_factory=list)
    overflow: QueueOverflow | None = None

    @property
    def dropped_mutation_ids(self) -> list[str]:
        ids = list(self.dropped_success_ids)
        if self.overflow is not None:
            ids.extend(self.overflow.dropped_ids)
        return ids

    @property
    def changed(self) -> bool:
        return bool(self.dropped_success_ids or self.dropped_log_ids or self.overflow)


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

_V1_STATUS = {"processing": "inFlight", "conflict": "conflicted"}


def _ms_to_iso(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
    return value


def _migrate_v1(raw: dict[str, Any]) -> dict[str, Any]:
    """camelCase mutations with epoch-millisecond timestamps -> version 2."""
    mutations = []
    for index, item in enumerate(raw.get("mutations", [])):
        payload = dict(item.get("payload") or {})
        status = item.get("status", "pending")
        entry = {
            "id": item["id"],
            "type": item["type"],
            "payload": {k: v for k, v in payload.items() if k != "id"} if item["type"] != "add" else payload,
            "target_entity_id": item.get("targetEntityId") or payload.get("id"),
            "timestamp": _ms_to_iso(item.get("timestamp")),
            "retry_count": item.get("retryCount", 0),
            "status": _V1_STATUS.get(status, status),
            "priority": item.get("priority"),
            "sequence": index,
            "error": item.get("error"),
        }
        # Missing legacy values fall back to the current defaults.
        mutations.append({k: v for k, v in entry.items() if v is not None})
    return {"version": 2, "mutations": mutations, "conflict_log": []}


MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_v1,
}


def migrate(raw: Any) -> dict[str, Any]:
    """Bring a raw persisted document up to ``CURRENT_VERSION``."""
    if isinstance(raw, list):
        # Unversioned legacy layout: a bare array of mutations.
        raw = {"version": 1, "mutations": raw}
    if not isinstance(raw, dict):
        raise StorageError(f"Unsupported queue document type: {type(raw).__name__}")

    version = int(raw.get("version", 1))
    if version > CURRENT_VERSION:
        raise StorageError(
            f"Queue document version {version} is newer than supported version {CURRENT_VERSION}",
            details={"version": version},
        )
    while version < CURRENT_VERSION:
        logger.info(f"Migrating queue document from version {version}")
        raw = MIGRATIONS[version](raw)
        version = int(raw["version"])
    return raw


# ---------------------------------------------------------------------------
# Reclamation
# ---------------------------------------------------------------------------


def serialize(document: QueueDocument) -> str:
    return document.model_dump_json()


def reclaim(
    document: QueueDocument,
    *,
    now: datetime,
    quota_bytes: int,
    hard_cap: int,
    retention_seconds: float,
) -> ReclaimReport:
    """Shrink ``document`` in place until it fits, and report what was dropped."""
    report = ReclaimReport()

    def over_quota() -> bool:
        return len(document.mutations) > hard_cap or len(serialize(document).encode("utf-8")) > quota_bytes

    if not over_quota():
        return report

    cutoff = now - timedelta(seconds=retention_seconds)

    # 1. Successful mutations older than the retention window.
    kept = []
    for mutation in document.mutations:
        finished = mutation.completed_at or mutation.timestamp
        if mutation.status is MutationStatus.SUCCESS and finished < cutoff:
            report.dropped_success_ids.append(mutation.id)
        else:
            kept.append(mutation)
    document.mutations = kept
    if not over_quota():
        return report

    # 2. Resolved conflict-log entries older than the retention window.
    kept_log = []
    for entry in document.conflict_log:
        if entry.resolved_at < cutoff:
            report.dropped_log_ids.append(entry.id)
        else:
            kept_log.append(entry)
    document.conflict_log = kept_log
    if not over_quota():
        return report

    # 3. Oldest pending mutations beyond the hard cap.
    excess = len(document.mutations) - hard_cap
    if excess > 0:
        pending = sorted(
            (m for m in document.mutations if m.status is MutationStatus.PENDING),
            key=lambda m: (m.sequence, m.timestamp),
        )
        dropped = {m.id for m in pending[:excess]}
        if dropped:
            document.mutations = [m for m in document.mutations if m.id not in dropped]
            ordered = [m.id for m in pending[:excess]]
            report.overflow = QueueOverflow(ordered, hard_cap=hard_cap)
            logger.warning(f"Queue overflow: dropped {len(ordered)} oldest pending mutation(s) beyond hard cap {hard_cap}")

    if over_quota():
        logger.warning(
            f"Queue document still exceeds storage quota after reclamation ({len(document.mutations)} mutations)"
        )
    return report


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class QueueStore(ABC):
    """Durable home of the queue document. Owned by one queue manager."""

    def __init__(
        self,
        *,
        quota_bytes: int = 5 * 1024 * 1024,
        hard_cap: int = 500,
        retention_seconds: float = 24 * 60 * 60,
        clock: Clock | None = None,
    ) -> None:
        self.quota_bytes = quota_bytes
        self.hard_cap = hard_cap
        self.retention_seconds = retention_seconds
        self.clock = clock or SystemClock()

    @abstractmethod
    async def _read(self) -> str | None:
        """Return the raw stored document, or ``None`` when nothing is stored."""

    @abstractmethod
    async def _write(self, data: str) -> None:
        """Durably replace the stored document."""

    async def _quarantine(self, data: str) -> None:
        """Keep an unreadable document around for inspection."""

    async def close(self) -> None:
        return None

    async def load(self) -> QueueDocument:
        data = await self._read()
        if not data:
            return QueueDocument()
        try:
            raw = json.loads(data)
            return QueueDocument.model_validate(migrate(raw))
        except (json.JSONDecodeError, ValidationError, KeyError) as exc:
            logger.error(f"Stored queue document is unreadable, starting empty: {exc}")
            await self._quarantine(data)
            return QueueDocument()

    async def save(self, document: QueueDocument) -> ReclaimReport:
        report = reclaim(
            document,
            now=self.clock.now(),
            quota_bytes=self.quota_bytes,
            hard_cap=self.hard_cap,
            retention_seconds=self.retention_seconds,
        )
        await self._write(serialize(document))
        return report


class MemoryQueueStore(QueueStore):
    """Non-durable store for ephemeral sessions. Same semantics as the others."""

    def __init__(self, data: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.data = data
        self.quarantined: list[str] = []

    async def _read(self) -> str | None:
        return self.data

    async def _write(self, data: str) -> None:
        self.data = data

    async def _quarantine(self, data: str) -> None:
        self.quarantined.append(data)


class FileQueueStore(QueueStore):
    """JSON file store with atomic replace."""

    def __init__(self, path: str | os.PathLike[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.path = Path(path)

    def _read_sync(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write_sync(self, data: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, self.path)

    async def _read(self) -> str | None:
        try:
            return await asyncio.to_thread(self._read_sync)
        except OSError as exc:
            raise StorageError(f"Failed to read queue file {self.path}: {exc}") from exc

    async def _write(self, data: str) -> None:
        try:
            await asyncio.to_thread(self._write_sync, data)
        except OSError as exc:
            raise StorageError(f"Failed to write queue file {self.path}: {exc}") from exc

    async def _quarantine(self, data: str) -> None:
        stamp = self.clock.now().strftime("%Y%m%dT%H%M%S")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            await asyncio.to_thread(os.replace, self.path, target)
            logger.warning(f"Moved unreadable queue file to {target}")
        except OSError as exc:
            logger.error(f"Could not quarantine unreadable queue file {self.path}: {exc}")


class RedisQueueStore(QueueStore):
    """Stores the whole document under a single Redis key."""

    def __init__(
        self,
        client: Redis | None = None,
        *,
        url: str = "redis://localhost:6379/0",
        key: str = "offline_queue:document",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.key = key
        self._client = client or redis.from_url(url, encoding="utf-8", decode_responses=True)

    async def _read(self) -> str | None:
        try:
            data = await self._client.get(self.key)
        except RedisError as exc:
            raise StorageError(f"Failed to read queue from Redis: {exc}") from exc
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return data

    async def _write(self, data: str) -> None:
        try:
            await self._client.set(self.key, data)
        except RedisError as exc:
            raise StorageError(f"Failed to write queue to Redis: {exc}") from exc

    async def _quarantine(self, data: str) -> None:
        stamp = self.clock.now().strftime("%Y%m%dT%H%M%S")
        await self._client.set(f"{self.key}:corrupt:{stamp}", data)

    async def close(self) -> None:
        await self._client.aclose()


def create_store(settings: Settings, clock: Clock | None = None) -> QueueStore:
    common = {
        "quota_bytes": settings.storage_quota_bytes,
        "hard_cap": settings.hard_cap,
        "retention_seconds": settings.retention_seconds,
        "clock": clock,
    }
    if settings.storage_backend == "redis":
        return RedisQueueStore(url=settings.redis_url, key=settings.redis_key, **common)
    if settings.storage_backend == "memory":
        return MemoryQueueStore(**common)
    return FileQueueStore(settings.queue_path, **common)
