"""Mutation model, entity and queue status types."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

from offline_queue.errors import InvalidMutation, PreconditionFailed

logger = logging.getLogger(__name__)

# Fields compared by the conflict detector, in display order.
MUTABLE_FIELDS: tuple[str, ...] = ("name", "quantity", "gotten", "category", "notes")

# Identity/classification fields that are never merged automatically.
CRITICAL_FIELDS: frozenset[str] = frozenset({"name", "category"})

# Fields an update payload may carry.
UPDATABLE_FIELDS: frozenset[str] = frozenset(MUTABLE_FIELDS) | {"list_id"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class MutationType(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    MARK_GOTTEN = "markGotten"


class MutationStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "inFlight"
    SUCCESS = "success"
    FAILED = "failed"
    CONFLICTED = "conflicted"


class ResolutionStrategy(str, Enum):
    LAST_WRITE_WINS = "last-write-wins"
    FIELD_LEVEL_MERGE = "field-level-merge"
    PREFER_GOTTEN = "prefer-gotten"
    PREFER_LOCAL = "prefer-local"
    PREFER_REMOTE = "prefer-remote"
    MANUAL = "manual"


# Higher values are dispatched first: deletes must not be stranded behind bulk adds.
MUTATION_PRIORITY: dict[MutationType, int] = {
    MutationType.DELETE: 100,
    MutationType.UPDATE: 50,
    MutationType.MARK_GOTTEN: 50,
    MutationType.ADD: 10,
}

# Forward-only, except failed -> pending (retry) and conflicted -> pending (resolved).
# inFlight -> pending is a transient failure scheduled for another attempt.
ALLOWED_TRANSITIONS: dict[MutationStatus, frozenset[MutationStatus]] = {
    MutationStatus.PENDING: frozenset({MutationStatus.IN_FLIGHT}),
    MutationStatus.IN_FLIGHT: frozenset(
        {
            MutationStatus.SUCCESS,
            MutationStatus.CONFLICTED,
            MutationStatus.FAILED,
            MutationStatus.PENDING,
        }
    ),
    MutationStatus.FAILED: frozenset({MutationStatus.PENDING}),
    MutationStatus.CONFLICTED: frozenset({MutationStatus.PENDING}),
    MutationStatus.SUCCESS: frozenset(),
}


class Entity(BaseModel):
    """A list item as held locally or by the remote authority."""

    id: str
    name: str
    quantity: int | float = 1
    gotten: bool = False
    category: str = "Other"
    notes: str | None = None
    list_id: str | None = None
    owner_id: str | None = None
    updated_at: datetime

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Entity":
        """Build an entity from a sync document (``_id`` or ``id`` keyed)."""
        data = {k: v for k, v in doc.items() if not k.startswith("_") and k != "type"}
        data.setdefault("id", doc.get("_id"))
        return cls.model_validate(data)

    def to_document(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"id"})
        return {"_id": self.id, "type": "item", **data}

    def field_values(self) -> dict[str, Any]:
        return {field: getattr(self, field) for field in MUTABLE_FIELDS}


class FieldConflict(BaseModel):
    field: str
    local_value: Any = None
    remote_value: Any = None


class ConflictDescriptor(BaseModel):
    """Divergence between the local intent and the remote version of one entity."""

    local: Entity
    remote: Entity
    field_conflicts: list[FieldConflict]
    detected_at: datetime | None = None

    @property
    def entity_id(self) -> str:
        return self.remote.id

    @property
    def fields(self) -> list[str]:
        return [fc.field for fc in self.field_conflicts]


class QueuedMutation(BaseModel):
    """A single user intent plus its queue metadata."""

    id: str
    type: MutationType
    payload: dict[str, Any] = Field(default_factory=dict)
    target_entity_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    retry_count: int = 0
    status: MutationStatus = MutationStatus.PENDING
    priority: int | None = None
    # Times handed to the remote authority; non-zero means the effect may have landed.
    attempts: int = 0

    # Enqueue order; FIFO within a priority tier and per entity.
    sequence: int = 0
    # Bumped each time an auto-resolved payload is resubmitted.
    revision: int = 0
    # Write time claimed by a resubmitted, conflict-resolved payload.
    resubmitted_at: datetime | None = None
    next_attempt_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    supersedes: list[str] = Field(default_factory=list)
    conflict: ConflictDescriptor | None = None

    @property
    def is_outstanding(self) -> bool:
        return self.status in (MutationStatus.PENDING, MutationStatus.IN_FLIGHT)

    @property
    def idempotency_key(self) -> str:
        """Stable across transient retries of the same payload."""
        if self.revision == 0:
            return self.id
        return f"{self.id}.r{self.revision}"

    def transition(self, new_status: MutationStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise PreconditionFailed(
                f"Illegal status transition {self.status.value} -> {new_status.value} for mutation {self.id}",
                details={"mutation_id": self.id, "from": self.status.value, "to": new_status.value},
            )
        self.status = new_status


class ManualResolutionRequest(BaseModel):
    """Raised to the UI when a conflict cannot be auto-resolved."""

    conflict_id: str
    mutation_id: str
    entity_id: str
    conflict: ConflictDescriptor
    candidate_strategies: list[ResolutionStrategy]
    requested_at: datetime


class QueueStatus(BaseModel):
    pending: int = 0
    in_flight: int = 0
    failed: int = 0
    conflicted: int = 0
    success: int = 0
    total: int = 0
    is_processing: bool = False
    online: bool = False
    last_sync_time: datetime | None = None


class ProcessingResult(BaseModel):
    success_count: int = 0
    failed_count: int = 0
    conflicted_count: int = 0
    pending_count: int = 0
    failed_mutation_ids: list[str] = Field(default_factory=list)
    processing_time: float = 0.0


class SyncStatistics(BaseModel):
    mutations_synced: int = 0
    conflicts_detected: int = 0
    conflicts_auto_resolved: int = 0
    conflicts_manual_resolution: int = 0
    failed_attempts: int = 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_name(value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InvalidMutation("name must be a non-empty string", field="name")


def validate_mutation(mutation: QueuedMutation | Mapping[str, Any]) -> QueuedMutation:
    """Validate an intent and return it as a :class:`QueuedMutation`.

    Raises :class:`InvalidMutation` when the id is missing, the type is
    unknown, or the type-specific payload requirements are not met.
    """
    if isinstance(mutation, Mapping):
        if not mutation.get("id"):
            raise InvalidMutation("Mutation id is required", field="id")
        raw_type = mutation.get("type")
        if raw_type not in {t.value for t in MutationType}:
            raise InvalidMutation(f"Unknown mutation type: {raw_type!r}", field="type")
        try:
            mutation = QueuedMutation.model_validate(mutation)
        except ValidationError as exc:
            first = exc.errors()[0]
            loc = ".".join(str(part) for part in first.get("loc", ()))
            raise InvalidMutation(f"Malformed mutation: {first.get('msg')}", field=loc or None) from exc

    if not mutation.id:
        raise InvalidMutation("Mutation id is required", field="id")

    payload = mutation.payload
    if mutation.type is MutationType.ADD:
        _check_name(payload.get("name"))
        if not _is_number(payload.get("quantity")):
            raise InvalidMutation("add requires a numeric quantity", field="quantity")
        if not mutation.target_entity_id:
            # New entities get their id at creation time.
            mutation = mutation.model_copy(update={"target_entity_id": payload.get("id") or new_id()})
        return mutation

    if not mutation.target_entity_id:
        raise InvalidMutation(f"{mutation.type.value} requires target_entity_id", field="target_entity_id")

    if mutation.type is MutationType.UPDATE:
        unknown = set(payload) - UPDATABLE_FIELDS - {"id"}
        if unknown:
            raise InvalidMutation(f"Unknown update field(s): {', '.join(sorted(unknown))}", field="payload")
        if "id" in payload and payload["id"] != mutation.target_entity_id:
            raise InvalidMutation("payload id does not match target_entity_id", field="payload.id")
        if "name" in payload:
            _check_name(payload["name"])
        if "quantity" in payload and not _is_number(payload["quantity"]):
            raise InvalidMutation("quantity must be numeric", field="quantity")
        if "gotten" in payload and not isinstance(payload["gotten"], bool):
            raise InvalidMutation("gotten must be a boolean", field="gotten")
    elif mutation.type is MutationType.MARK_GOTTEN:
        if "gotten" in payload and not isinstance(payload["gotten"], bool):
            raise InvalidMutation("gotten must be a boolean", field="gotten")

    return mutation


def intended_fields(mutation: QueuedMutation) -> dict[str, Any]:
    """Field values the mutation sets on its target entity."""
    if mutation.type is MutationType.MARK_GOTTEN:
        return {"gotten": mutation.payload.get("gotten", True)}
    if mutation.type is MutationType.DELETE:
        return {}
    return {k: v for k, v in mutation.payload.items() if k in UPDATABLE_FIELDS or k in ("owner_id",)}


def apply_to_entity(entity: Entity | None, mutation: QueuedMutation, updated_at: datetime) -> Entity | None:
    """Return the entity as the mutation intends it to be.

    ``None`` means the entity is deleted (or an update targets nothing).
    """
    if mutation.type is MutationType.DELETE:
        return None
    if mutation.type is MutationType.ADD:
        data = {"id": mutation.target_entity_id, **intended_fields(mutation), "updated_at": updated_at}
        if entity is not None:
            data = {**entity.model_dump(), **data}
        return Entity.model_validate(data)
    if entity is None:
        return None
    return entity.model_copy(update={**intended_fields(mutation), "updated_at": updated_at})


def _new_mutation(
    mutation_type: MutationType,
    payload: dict[str, Any],
    target_entity_id: str | None,
    timestamp: datetime | None,
) -> QueuedMutation:
    return QueuedMutation(
        id=new_id(),
        type=mutation_type,
        payload=payload,
        target_entity_id=target_entity_id,
        timestamp=timestamp or utcnow(),
        priority=MUTATION_PRIORITY[mutation_type],
    )


def create_add_mutation(
    name: str,
    quantity: int | float = 1,
    *,
    category: str = "Other",
    notes: str | None = None,
    list_id: str | None = None,
    owner_id: str | None = None,
    entity_id: str | None = None,
    timestamp: datetime | None = None,
) -> QueuedMutation:
    payload: dict[str, Any] = {
        "name": name,
        "quantity": quantity,
        "gotten": False,
        "category": category,
        "notes": notes,
        "list_id": list_id,
        "owner_id": owner_id,
    }
    return _new_mutation(MutationType.ADD, payload, entity_id or new_id(), timestamp)


def create_update_mutation(entity_id: str, timestamp: datetime | None = None, **changes: Any) -> QueuedMutation:
    return _new_mutation(MutationType.UPDATE, dict(changes), entity_id, timestamp)


def create_mark_gotten_mutation(entity_id: str, gotten: bool = True, timestamp: datetime | None = None) -> QueuedMutation:
    return _new_mutation(MutationType.MARK_GOTTEN, {"gotten": gotten}, entity_id, timestamp)


def create_delete_mutation(entity_id: str, timestamp: datetime | None = None) -> QueuedMutation:
    return _new_mutation(MutationType.DELETE, {}, entity_id, timestamp)
