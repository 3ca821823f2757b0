"""Manual conflict resolution and the conflict log."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from offline_queue.conflict_log import (
    ConflictLogEntry,
    ConflictLogFilter,
    ConflictLogStats,
    ResolutionOutcome,
)
from offline_queue.manager import OfflineQueueManager
from offline_queue.models import Entity, ManualResolutionRequest, ResolutionStrategy
from offline_queue.routers import get_manager

router = APIRouter(prefix="/api/v1/conflicts", tags=["conflicts"])


class ResolveIn(BaseModel):
    entity: Entity | None = None
    strategy: ResolutionStrategy = ResolutionStrategy.MANUAL


class ResolveOut(BaseModel):
    conflict_id: str
    mutation_id: str | None = None


class ConflictLogResponse(BaseModel):
    entries: list[ConflictLogEntry]
    stats: ConflictLogStats


@router.get("", response_model=list[ManualResolutionRequest])
async def list_conflicts(
    manager: Annotated[OfflineQueueManager, Depends(get_manager)],
) -> list[ManualResolutionRequest]:
    return manager.get_conflicts()


@router.get("/log", response_model=ConflictLogResponse)
async def conflict_log(
    manager: Annotated[OfflineQueueManager, Depends(get_manager)],
    entity_id: str | None = None,
    strategy: ResolutionStrategy | None = None,
    outcome: ResolutionOutcome | None = None,
    automatic: bool | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: Annotated[int | None, Query(ge=1, le=1000)] = None,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ConflictLogResponse:
    flt = ConflictLogFilter(
        entity_id=entity_id,
        strategy=strategy,
        outcome=outcome,
        automatic=automatic,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return ConflictLogResponse(
        entries=manager.query_conflict_log(flt),
        stats=manager.conflict_log.stats(),
    )


@router.post("/{conflict_id}/resolve", response_model=ResolveOut)
async def resolve_conflict(
    conflict_id: str,
    payload: ResolveIn,
    manager: Annotated[OfflineQueueManager, Depends(get_manager)],
) -> ResolveOut:
    """Settle a conflict with a chosen entity or a named strategy."""
    mutation_id = await manager.resolve_manually(conflict_id, payload.entity, payload.strategy)
    return ResolveOut(conflict_id=conflict_id, mutation_id=mutation_id)
