"""Field-level conflict detection between a local and a remote entity."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from offline_queue.errors import PreconditionFailed
from offline_queue.models import MUTABLE_FIELDS, ConflictDescriptor, Entity, FieldConflict


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def values_differ(local: Any, remote: Any) -> bool:
    """Value comparison used for every mutable field.

    ``None`` and ``""`` are equivalent, so clearing notes on one side while
    the other never set them is not a conflict.
    """
    if _is_empty(local) and _is_empty(remote):
        return False
    if _is_empty(local) or _is_empty(remote):
        return True
    if isinstance(local, bool) or isinstance(remote, bool):
        return local is not remote
    return local != remote


def detect_conflict(
    local: Entity,
    remote: Entity,
    *,
    detected_at: datetime | None = None,
) -> ConflictDescriptor | None:
    """Compare every mutable field of ``local`` and ``remote``.

    Returns ``None`` when no field differs, whatever the timestamps say.
    Otherwise the descriptor lists only the differing fields.
    """
    if local.id != remote.id:
        raise PreconditionFailed(
            f"Cannot compare different entities: {local.id} != {remote.id}",
            details={"local_id": local.id, "remote_id": remote.id},
        )

    field_conflicts = [
        FieldConflict(field=field, local_value=getattr(local, field), remote_value=getattr(remote, field))
        for field in MUTABLE_FIELDS
        if values_differ(getattr(local, field), getattr(remote, field))
    ]
    if not field_conflicts:
        return None

    return ConflictDescriptor(
        local=local,
        remote=remote,
        field_conflicts=field_conflicts,
        detected_at=detected_at,
    )
