"""Health check endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from offline_queue.coordinator import SyncCoordinator
from offline_queue.routers import get_coordinator

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    queue: str
    online: bool
    pending: int


@router.get("/healthz", response_model=HealthResponse)
async def health_check(coordinator: Annotated[SyncCoordinator, Depends(get_coordinator)]) -> HealthResponse:
    """Report queue state and connectivity."""
    status = coordinator.manager.get_status()
    queue_status = "healthy" if coordinator.started else "stopped"
    return HealthResponse(
        status=queue_status,
        queue=queue_status,
        online=status.online,
        pending=status.pending,
    )


@router.get("/ready")
async def readiness_check(coordinator: Annotated[SyncCoordinator, Depends(get_coordinator)]):
    """Ready once the persisted queue has been loaded."""
    if not coordinator.started:
        return JSONResponse(status_code=503, content={"status": "starting"})
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
