"""Queue control endpoints."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Query, status
from pydantic import BaseModel

from offline_queue.coordinator import SyncCoordinator
from offline_queue.manager import OfflineQueueManager
from offline_queue.models import (
    MutationStatus,
    ProcessingResult,
    QueuedMutation,
    QueueStatus,
    SyncStatistics,
)
from offline_queue.routers import get_coordinator, get_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/queue", tags=["queue"])


class EnqueueResponse(BaseModel):
    id: str


class ConnectivityIn(BaseModel):
    online: bool


class ConnectivityOut(BaseModel):
    online: bool
    quality: str
    offline_duration: float | None = None


class ClearResponse(BaseModel):
    removed: int


@router.get("/status", response_model=QueueStatus)
async def get_status(manager: Annotated[OfflineQueueManager, Depends(get_manager)]) -> QueueStatus:
    return manager.get_status()


@router.get("/statistics", response_model=SyncStatistics)
async def get_statistics(manager: Annotated[OfflineQueueManager, Depends(get_manager)]) -> SyncStatistics:
    return manager.statistics


@router.get("/mutations", response_model=list[QueuedMutation])
async def list_mutations(
    manager: Annotated[OfflineQueueManager, Depends(get_manager)],
    status_filter: Annotated[MutationStatus | None, Query(alias="status")] = None,
) -> list[QueuedMutation]:
    """Queued mutations in dispatch order."""
    return manager.get_queued_mutations(status_filter)


@router.post("/mutations", response_model=EnqueueResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_mutation(
    coordinator: Annotated[SyncCoordinator, Depends(get_coordinator)],
    mutation: Annotated[dict[str, Any], Body()],
) -> EnqueueResponse:
    # Validated by the queue so malformed intents map to INVALID_MUTATION.
    mutation_id = await coordinator.enqueue(mutation)
    return EnqueueResponse(id=mutation_id)


@router.get("/mutations/{mutation_id}", response_model=QueuedMutation)
async def get_mutation(
    mutation_id: str,
    manager: Annotated[OfflineQueueManager, Depends(get_manager)],
) -> QueuedMutation:
    return manager.get_mutation(mutation_id)


@router.delete("/mutations/{mutation_id}", response_model=QueuedMutation)
async def delete_mutation(
    mutation_id: str,
    manager: Annotated[OfflineQueueManager, Depends(get_manager)],
) -> QueuedMutation:
    """Cancel a pending mutation or clear a terminal one."""
    mutation = manager.get_mutation(mutation_id)
    if mutation.status is MutationStatus.PENDING:
        return await manager.cancel(mutation_id)
    return await manager.remove(mutation_id)


@router.delete("/mutations", response_model=ClearResponse)
async def clear_mutations(
    manager: Annotated[OfflineQueueManager, Depends(get_manager)],
    failed_only: bool = False,
) -> ClearResponse:
    removed = await manager.clear_failed() if failed_only else await manager.clear_queue()
    return ClearResponse(removed=removed)


@router.post("/process", response_model=ProcessingResult)
async def process_queue(manager: Annotated[OfflineQueueManager, Depends(get_manager)]) -> ProcessingResult:
    return await manager.process_queue()


@router.post("/retry-failed", response_model=ProcessingResult)
async def retry_failed(manager: Annotated[OfflineQueueManager, Depends(get_manager)]) -> ProcessingResult:
    return await manager.retry_failed()


@router.post("/connectivity", response_model=ConnectivityOut)
async def set_connectivity(
    payload: ConnectivityIn,
    coordinator: Annotated[SyncCoordinator, Depends(get_coordinator)],
) -> ConnectivityOut:
    coordinator.set_online(payload.online)
    monitor = coordinator.connectivity
    return ConnectivityOut(
        online=monitor.online,
        quality=monitor.quality.value,
        offline_duration=monitor.offline_duration,
    )
