"""Server-Sent Events channel for queue notifications.

Every subscriber owns a bounded ``asyncio.Queue`` and may restrict itself
to a set of event names. Events are numbered so clients can tell whether
they missed any; a ``None`` on a subscriber queue ends its stream.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)

CONNECTIVITY_CHANGED = "connectivity:changed"
QUEUE_STATUS = "queue:status"
MANUAL_RESOLUTION = "queue:manual_resolution"
MUTATION_SETTLED = "queue:settled"
QUEUE_OVERFLOW = "queue:overflow"
PING = "sync:ping"

EVENT_NAMES = frozenset({CONNECTIVITY_CHANGED, QUEUE_STATUS, MANUAL_RESOLUTION, MUTATION_SETTLED, QUEUE_OVERFLOW})


@dataclass(frozen=True)
class QueueEvent:
    event: str
    data: dict[str, Any]
    id: int | None = None

    def encode(self) -> str:
        lines = [f"event: {self.event}"]
        if self.id is not None:
            lines.append(f"id: {self.id}")
        lines.append(f"data: {json.dumps(self.data, default=str)}")
        return "\n".join(lines) + "\n\n"


@dataclass
class Subscription:
    """One connected client. ``types`` of None means every event."""

    queue: asyncio.Queue[QueueEvent | None]
    types: frozenset[str] | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    dropped: int = 0

    def wants(self, name: str) -> bool:
        return self.types is None or name in self.types


class EventChannel:
    def __init__(self, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._subscriptions: dict[str, Subscription] = {}
        self._ids = itertools.count(1)
        self._closed = False

    def subscribe(self, types: Iterable[str] | None = None) -> Subscription:
        wanted = frozenset(types) if types is not None else None
        if wanted is not None:
            unknown = wanted - EVENT_NAMES
            if unknown:
                raise ValueError(f"Unknown event type(s): {', '.join(sorted(unknown))}")
        subscription = Subscription(asyncio.Queue(maxsize=self.max_queue_size), wanted)
        if self._closed:
            subscription.queue.put_nowait(None)
        self._subscriptions[subscription.id] = subscription
        logger.info(f"SSE subscriber {subscription.id[:8]} joined, total: {len(self._subscriptions)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._subscriptions.pop(subscription.id, None) is None:
            return
        if subscription.dropped:
            logger.warning(f"SSE subscriber {subscription.id[:8]} left after {subscription.dropped} dropped event(s)")
        logger.info(f"SSE subscriber {subscription.id[:8]} left, total: {len(self._subscriptions)}")

    def broadcast(self, name: str, data: dict[str, Any]) -> QueueEvent:
        """Number the event and offer it to every interested subscriber.

        A subscriber whose queue is full misses the event; the gap shows up
        in the ids it does receive.
        """
        event = QueueEvent(name, data, next(self._ids))
        for subscription in list(self._subscriptions.values()):
            if not subscription.wants(name):
                continue
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.debug(f"SSE subscriber {subscription.id[:8]} is full, dropped {name} #{event.id}")
        return event

    def close(self) -> None:
        self._closed = True
        for subscription in self._subscriptions.values():
            while True:
                try:
                    subscription.queue.put_nowait(None)
                    break
                except asyncio.QueueFull:
                    # Make room for the close marker.
                    subscription.queue.get_nowait()

    def reopen(self) -> None:
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


def ping_event() -> QueueEvent:
    return QueueEvent(PING, {"timestamp": datetime.now(timezone.utc).isoformat()})
