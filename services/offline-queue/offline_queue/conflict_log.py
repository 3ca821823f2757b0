"""Audit journal of conflict resolutions.

Only the outcome of a conflict is persisted; the descriptor itself is
ephemeral. Entries are stored inside the queue document and are reclaimed
by the store under storage pressure.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from offline_queue.detector import values_differ
from offline_queue.models import (
    UPDATABLE_FIELDS,
    ConflictDescriptor,
    Entity,
    ResolutionStrategy,
    new_id,
)

logger = logging.getLogger(__name__)


class ResolutionOutcome(str, Enum):
    LOCAL_ACCEPTED = "local_accepted"
    REMOTE_ACCEPTED = "remote_accepted"
    MERGED = "merged"
    CUSTOM = "custom"
    DELETED = "deleted"


class ConflictLogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    conflict_id: str
    entity_id: str
    strategy: ResolutionStrategy
    outcome: ResolutionOutcome
    automatic: bool
    fields: list[str]
    detected_at: datetime | None = None
    resolved_at: datetime
    local_snapshot: dict[str, Any] | None = None
    remote_snapshot: dict[str, Any] | None = None
    resolved_snapshot: dict[str, Any] | None = None


class ConflictLogFilter(BaseModel):
    entity_id: str | None = None
    strategy: ResolutionStrategy | None = None
    outcome: ResolutionOutcome | None = None
    automatic: bool | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int | None = None
    offset: int = 0


class ConflictLogStats(BaseModel):
    total: int = 0
    auto_resolved: int = 0
    manual_resolved: int = 0
    last_updated_at: datetime | None = None


def _same_fields(a: Entity, b: Entity) -> bool:
    return not any(values_differ(getattr(a, f), getattr(b, f)) for f in UPDATABLE_FIELDS)


def classify_outcome(conflict: ConflictDescriptor, resolved: Entity | None) -> ResolutionOutcome:
    if resolved is None:
        return ResolutionOutcome.DELETED
    matches_local = _same_fields(resolved, conflict.local)
    matches_remote = _same_fields(resolved, conflict.remote)
    if matches_remote:
        return ResolutionOutcome.REMOTE_ACCEPTED
    if matches_local:
        return ResolutionOutcome.LOCAL_ACCEPTED
    # Every differing field taken from one side or the other is a merge.
    for fc in conflict.field_conflicts:
        value = getattr(resolved, fc.field)
        if values_differ(value, fc.local_value) and values_differ(value, fc.remote_value):
            return ResolutionOutcome.CUSTOM
    return ResolutionOutcome.MERGED


class ConflictLog:
    """Bounded, queryable list of resolution records (newest last)."""

    def __init__(self, capacity: int = 1000, entries: list[ConflictLogEntry] | None = None) -> None:
        self.capacity = capacity
        self._entries: list[ConflictLogEntry] = list(entries or [])[-capacity:]

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[ConflictLogEntry]:
        return list(self._entries)

    def replace(self, entries: list[ConflictLogEntry]) -> None:
        self._entries = list(entries)[-self.capacity:]

    def record(
        self,
        conflict_id: str,
        conflict: ConflictDescriptor,
        strategy: ResolutionStrategy,
        resolved: Entity | None,
        *,
        automatic: bool,
        resolved_at: datetime,
    ) -> ConflictLogEntry:
        entry = ConflictLogEntry(
            conflict_id=conflict_id,
            entity_id=conflict.entity_id,
            strategy=strategy,
            outcome=classify_outcome(conflict, resolved),
            automatic=automatic,
            fields=conflict.fields,
            detected_at=conflict.detected_at,
            resolved_at=resolved_at,
            local_snapshot=conflict.local.model_dump(mode="json"),
            remote_snapshot=conflict.remote.model_dump(mode="json"),
            resolved_snapshot=resolved.model_dump(mode="json") if resolved is not None else None,
        )
        self._entries.append(entry)
        if len(self._entries) > self.capacity:
            del self._entries[: len(self._entries) - self.capacity]
        mode = "auto" if automatic else "manual"
        logger.info(
            f"Conflict {conflict_id} on {entry.entity_id} resolved via {strategy.value} ({entry.outcome.value}, {mode})"
        )
        return entry

    def query(self, flt: ConflictLogFilter | None = None) -> list[ConflictLogEntry]:
        flt = flt or ConflictLogFilter()
        results = [
            entry
            for entry in self._entries
            if (flt.entity_id is None or entry.entity_id == flt.entity_id)
            and (flt.strategy is None or entry.strategy == flt.strategy)
            and (flt.outcome is None or entry.outcome == flt.outcome)
            and (flt.automatic is None or entry.automatic == flt.automatic)
            and (flt.start is None or entry.resolved_at >= flt.start)
            and (flt.end is None or entry.resolved_at <= flt.end)
        ]
        results.reverse()
        results = results[flt.offset:]
        if flt.limit is not None:
            results = results[: flt.limit]
        return results

    def stats(self) -> ConflictLogStats:
        auto = sum(1 for e in self._entries if e.automatic)
        return ConflictLogStats(
            total=len(self._entries),
            auto_resolved=auto,
            manual_resolved=len(self._entries) - auto,
            last_updated_at=self._entries[-1].resolved_at if self._entries else None,
        )
