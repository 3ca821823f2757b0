"""Notification fan-out from the queue manager to its collaborators.

Status changes are debounced so a burst of enqueues produces one update.
Manual-resolution requests, settled mutations and overflow warnings are
delivered immediately. Listeners may be plain or ``async`` callables.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from offline_queue.errors import QueueOverflow
from offline_queue.models import Entity, ManualResolutionRequest, QueuedMutation, QueueStatus

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class QueueNotifier:
    def __init__(self, debounce_seconds: float = 0.25) -> None:
        self.debounce_seconds = debounce_seconds
        self._status_listeners: list[Listener] = []
        self._manual_listeners: list[Listener] = []
        self._settled_listeners: list[Listener] = []
        self._overflow_listeners: list[Listener] = []
        self._status_source: Callable[[], QueueStatus] | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    # Subscription -------------------------------------------------------

    @staticmethod
    def _subscribe(listeners: list[Listener], callback: Listener) -> Callable[[], None]:
        listeners.append(callback)

        def unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def on_status_change(self, callback: Callable[[QueueStatus], Any]) -> Callable[[], None]:
        return self._subscribe(self._status_listeners, callback)

    def on_manual_resolution_needed(self, callback: Callable[[ManualResolutionRequest], Any]) -> Callable[[], None]:
        return self._subscribe(self._manual_listeners, callback)

    def on_mutation_settled(self, callback: Callable[[QueuedMutation, Entity | None], Any]) -> Callable[[], None]:
        return self._subscribe(self._settled_listeners, callback)

    def on_overflow(self, callback: Callable[[QueueOverflow], Any]) -> Callable[[], None]:
        return self._subscribe(self._overflow_listeners, callback)

    # Delivery -----------------------------------------------------------

    def _deliver(self, listeners: list[Listener], *args: Any) -> None:
        for callback in list(listeners):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception:
                logger.exception(f"Queue listener {callback!r} failed")

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async queue listener failed", exc_info=task.exception())

    def status_changed(self, source: Callable[[], QueueStatus]) -> None:
        """Schedule a status notification; the latest status wins."""
        self._status_source = source
        if self.debounce_seconds <= 0:
            self.flush()
            return
        if self._debounce_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        self._debounce_handle = loop.call_later(self.debounce_seconds, self.flush)

    def flush(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        source, self._status_source = self._status_source, None
        if source is None:
            return
        self._deliver(self._status_listeners, source())

    def manual_resolution_needed(self, request: ManualResolutionRequest) -> None:
        self._deliver(self._manual_listeners, request)

    def mutation_settled(self, mutation: QueuedMutation, entity: Entity | None) -> None:
        self._deliver(self._settled_listeners, mutation, entity)

    def overflow(self, warning: QueueOverflow) -> None:
        self._deliver(self._overflow_listeners, warning)

    async def aclose(self) -> None:
        self.flush()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()
