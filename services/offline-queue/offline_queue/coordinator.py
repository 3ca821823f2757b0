"""
Sync Coordinator: glue between the connectivity signal, the queue manager,
the reactive data layer and connected clients.

- connectivity transitions are forwarded to the queue manager;
- enqueued intents are applied optimistically to the data layer;
- settled mutations (and the entity the remote holds) are relayed back;
- status, manual-resolution and overflow notifications become SSE events.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Protocol

from offline_queue.connectivity import ConnectivityMonitor
from offline_queue.errors import QueueOverflow
from offline_queue.events import (
    CONNECTIVITY_CHANGED,
    MANUAL_RESOLUTION,
    MUTATION_SETTLED,
    QUEUE_OVERFLOW,
    QUEUE_STATUS,
    EventChannel,
)
from offline_queue.manager import OfflineQueueManager
from offline_queue.models import (
    Entity,
    ManualResolutionRequest,
    QueuedMutation,
    QueueStatus,
    validate_mutation,
)

logger = logging.getLogger(__name__)


class ReactiveDataLayer(Protocol):
    """Local, UI-facing view of the entities."""

    def apply_local(self, mutation: QueuedMutation) -> Any: ...

    def apply_settled(self, mutation: QueuedMutation, entity: Entity | None) -> Any: ...


class SyncCoordinator:
    def __init__(
        self,
        manager: OfflineQueueManager,
        connectivity: ConnectivityMonitor | None = None,
        *,
        data_layer: ReactiveDataLayer | None = None,
        events: EventChannel | None = None,
    ) -> None:
        self.manager = manager
        self.connectivity = connectivity or ConnectivityMonitor()
        self.data_layer = data_layer
        self.events = events or EventChannel()
        self._unsubscribers: list[Callable[[], None]] = []
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        notifier = self.manager.notifier
        self._unsubscribers = [
            notifier.on_status_change(self._on_status),
            notifier.on_manual_resolution_needed(self._on_manual_resolution),
            notifier.on_mutation_settled(self._on_settled),
            notifier.on_overflow(self._on_overflow),
            self.connectivity.on_change(self._on_connectivity),
        ]
        self.events.reopen()
        await self.manager.start()
        self.manager.set_online(self.connectivity.online)
        self.connectivity.start()
        self._started = True
        logger.info("Sync coordinator started")

    async def stop(self) -> None:
        if not self._started:
            return
        await self.connectivity.stop()
        await self.manager.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.events.close()
        self._started = False
        logger.info("Sync coordinator stopped")

    async def __aenter__(self) -> "SyncCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def enqueue(self, mutation: QueuedMutation | Mapping[str, Any]) -> str:
        """Queue an intent and reflect it in the data layer right away."""
        mutation = validate_mutation(mutation)
        mutation_id = await self.manager.enqueue(mutation)
        if self.data_layer is not None:
            self.data_layer.apply_local(mutation)
        return mutation_id

    def set_online(self, online: bool) -> None:
        self.connectivity.set_online(online)

    # Listeners -----------------------------------------------------------

    def _on_connectivity(self, online: bool) -> None:
        self.manager.set_online(online)
        self.events.broadcast(
            CONNECTIVITY_CHANGED,
            {"online": online, "quality": self.connectivity.quality.value},
        )

    def _on_status(self, status: QueueStatus) -> None:
        self.events.broadcast(QUEUE_STATUS, status.model_dump(mode="json"))

    def _on_manual_resolution(self, request: ManualResolutionRequest) -> None:
        self.events.broadcast(MANUAL_RESOLUTION, request.model_dump(mode="json"))

    def _on_settled(self, mutation: QueuedMutation, entity: Entity | None) -> None:
        if self.data_layer is not None:
            self.data_layer.apply_settled(mutation, entity)
        self.events.broadcast(
            MUTATION_SETTLED,
            {
                "id": mutation.id,
                "status": mutation.status.value,
                "entity_id": mutation.target_entity_id,
                "error": mutation.error,
            },
        )

    def _on_overflow(self, warning: QueueOverflow) -> None:
        logger.warning(f"Queue overflow: {len(warning.dropped_ids)} pending mutation(s) dropped")
        self.events.broadcast(
            QUEUE_OVERFLOW,
            {"dropped_ids": warning.dropped_ids, "hard_cap": warning.hard_cap},
        )
