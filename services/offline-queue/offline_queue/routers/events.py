"""Server-Sent Events endpoint for queue notifications."""

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from offline_queue.coordinator import SyncCoordinator
from offline_queue.errors import PreconditionFailed
from offline_queue.events import EVENT_NAMES, QUEUE_STATUS, QueueEvent, Subscription, ping_event
from offline_queue.routers import get_coordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/events", tags=["events"])

KEEPALIVE_SECONDS = 30
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def parse_types(types: str | None) -> list[str] | None:
    if not types:
        return None
    return [name.strip() for name in types.split(",") if name.strip()]


async def _relay(request: Request, coordinator: SyncCoordinator, subscription: Subscription):
    try:
        if subscription.wants(QUEUE_STATUS):
            # Current state first so clients don't wait for the next change.
            status = coordinator.manager.get_status().model_dump(mode="json")
            yield QueueEvent(QUEUE_STATUS, status).encode()
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(subscription.queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ping_event().encode()
                continue
            if event is None:
                break
            yield event.encode()
    except asyncio.CancelledError:
        logger.debug(f"SSE stream {subscription.id[:8]} cancelled")
    finally:
        coordinator.events.unsubscribe(subscription)


@router.get("/stream")
async def event_stream(
    request: Request,
    coordinator: Annotated[SyncCoordinator, Depends(get_coordinator)],
    types: Annotated[str | None, Query(description="Comma-separated event names to receive")] = None,
) -> StreamingResponse:
    """Stream queue events, optionally limited to ``types``.

    Known names: connectivity:changed, queue:status, queue:manual_resolution,
    queue:settled, queue:overflow. Idle streams get a ``sync:ping`` every
    30 seconds.
    """
    try:
        subscription = coordinator.events.subscribe(parse_types(types))
    except ValueError as e:
        raise PreconditionFailed(str(e))
    return StreamingResponse(
        _relay(request, coordinator, subscription),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/status")
async def connection_status(coordinator: Annotated[SyncCoordinator, Depends(get_coordinator)]) -> dict:
    return {
        "total_connections": coordinator.events.subscriber_count,
        "event_types": sorted(EVENT_NAMES),
    }
