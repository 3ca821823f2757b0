"""
Conflict Resolver: field-aware policies for queued intents that collided
with a newer remote version.

Decision table used by :func:`auto_resolve`, first match wins:

  1. any conflicting field in ``CRITICAL_FIELDS`` -> manual
  2. ``gotten`` differs (so one side is true)      -> prefer-gotten
  3. several non-critical fields differ            -> field-level-merge
  4. a single non-critical field differs           -> last-write-wins

Named strategies can also be applied directly with :func:`resolve_conflict`.
All functions here are pure and safe to call concurrently.
"""

from __future__ import annotations

import logging
from typing import Callable

from offline_queue.errors import PreconditionFailed
from offline_queue.models import (
    CRITICAL_FIELDS,
    ConflictDescriptor,
    Entity,
    ResolutionStrategy,
)

logger = logging.getLogger(__name__)


def _remote_is_newer(conflict: ConflictDescriptor) -> bool:
    # Ties go to the remote authority.
    return conflict.remote.updated_at >= conflict.local.updated_at


def _latest_updated_at(conflict: ConflictDescriptor):
    return max(conflict.local.updated_at, conflict.remote.updated_at)


def _last_write_wins(conflict: ConflictDescriptor) -> Entity:
    winner = conflict.remote if _remote_is_newer(conflict) else conflict.local
    return winner.model_copy()


def _field_level_merge(conflict: ConflictDescriptor) -> Entity:
    newer = conflict.remote if _remote_is_newer(conflict) else conflict.local
    updates = {fc.field: getattr(newer, fc.field) for fc in conflict.field_conflicts}
    updates["updated_at"] = _latest_updated_at(conflict)
    return conflict.remote.model_copy(update=updates)


def _prefer_gotten(conflict: ConflictDescriptor) -> Entity:
    if not (conflict.local.gotten or conflict.remote.gotten):
        return _last_write_wins(conflict)
    merged = _field_level_merge(conflict)
    return merged.model_copy(update={"gotten": True})


def _prefer_local(conflict: ConflictDescriptor) -> Entity:
    return conflict.local.model_copy(update={"updated_at": _latest_updated_at(conflict)})


def _prefer_remote(conflict: ConflictDescriptor) -> Entity:
    return conflict.remote.model_copy()


_STRATEGIES: dict[ResolutionStrategy, Callable[[ConflictDescriptor], Entity]] = {
    ResolutionStrategy.LAST_WRITE_WINS: _last_write_wins,
    ResolutionStrategy.FIELD_LEVEL_MERGE: _field_level_merge,
    ResolutionStrategy.PREFER_GOTTEN: _prefer_gotten,
    ResolutionStrategy.PREFER_LOCAL: _prefer_local,
    ResolutionStrategy.PREFER_REMOTE: _prefer_remote,
}


def choose_strategy(conflict: ConflictDescriptor) -> ResolutionStrategy:
    """Evaluate the decision table and return the strategy it selects."""
    fields = set(conflict.fields)
    if fields & CRITICAL_FIELDS:
        return ResolutionStrategy.MANUAL
    if "gotten" in fields and (conflict.local.gotten or conflict.remote.gotten):
        return ResolutionStrategy.PREFER_GOTTEN
    if len(fields) > 1:
        return ResolutionStrategy.FIELD_LEVEL_MERGE
    return ResolutionStrategy.LAST_WRITE_WINS


def auto_resolve(conflict: ConflictDescriptor) -> Entity | None:
    """Resolve without user input, or return ``None`` when that is unsafe."""
    strategy = choose_strategy(conflict)
    if strategy is ResolutionStrategy.MANUAL:
        logger.info(f"Conflict on {conflict.entity_id} needs manual resolution (fields: {', '.join(conflict.fields)})")
        return None
    return _STRATEGIES[strategy](conflict)


def resolve_conflict(
    conflict: ConflictDescriptor,
    strategy: ResolutionStrategy | str,
    chosen: Entity | None = None,
) -> Entity:
    """Apply a named strategy directly, bypassing the decision table.

    ``manual`` returns ``chosen``; calling it without one is a programming
    error and raises :class:`PreconditionFailed`.
    """
    try:
        strategy = ResolutionStrategy(strategy)
    except ValueError as exc:
        raise PreconditionFailed(f"Unknown resolution strategy: {strategy!r}") from exc

    if strategy is ResolutionStrategy.MANUAL:
        if chosen is None:
            raise PreconditionFailed(
                "Manual resolution requires a chosen entity",
                details={"entity_id": conflict.entity_id},
            )
        if chosen.id != conflict.entity_id:
            raise PreconditionFailed(
                f"Chosen entity {chosen.id} does not match conflict entity {conflict.entity_id}",
                details={"entity_id": conflict.entity_id, "chosen_id": chosen.id},
            )
        return chosen.model_copy()

    return _STRATEGIES[strategy](conflict)


def candidate_strategies(conflict: ConflictDescriptor) -> list[ResolutionStrategy]:
    """Strategies offered to the user alongside a manual-resolution request."""
    candidates = [ResolutionStrategy.PREFER_LOCAL, ResolutionStrategy.PREFER_REMOTE]
    if len(conflict.field_conflicts) > 1:
        candidates.append(ResolutionStrategy.FIELD_LEVEL_MERGE)
    candidates.append(ResolutionStrategy.MANUAL)
    return candidates
