from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from ..core.run_record import utc_now
from ..core.run_registry import RunRegistry

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class EventType(str, Enum):
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_CANCELLED = "run_cancelled"
    LOG_APPENDED = "log_appended"
    OUTPUT_APPENDED = "output_appended"
    ACTIVE_RUNS_SNAPSHOT = "active_runs_snapshot"
    # Only emitted on the per-run SSE stream.
    RUN_SNAPSHOT = "run_snapshot"


TERMINAL_EVENTS = frozenset({EventType.RUN_COMPLETED.value, EventType.RUN_CANCELLED.value})


def build_event(kind: EventType, run_id: Optional[str], data: Any) -> Dict[str, Any]:
    return {
        "type": kind.value,
        "runId": run_id,
        "timestamp": utc_now().isoformat(),
        "data": data,
    }


class Subscription:
    """One connected client: a bounded queue the transport layer drains.

    ``get`` returns None once the subscription has been closed, either explicitly or
    because the client fell too far behind and its queue overflowed.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self.id = uuid4().hex
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def deliver(self, event: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.close()
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Drop whatever is pending and wake any reader with the end-of-stream marker.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def get(self) -> Optional[Dict[str, Any]]:
        return await self._queue.get()

    def get_nowait(self) -> Optional[Dict[str, Any]]:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()


class OutputBroadcaster:
    """Fans run lifecycle and output events out to every connected subscriber.

    Every operation is synchronous, so under the event loop each one completes before
    any other callback runs. That is what guarantees a new subscriber sees its snapshot
    before any live event.
    """

    def __init__(self, registry: RunRegistry, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._registry = registry
        self._queue_size = queue_size
        self._subscribers: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self._queue_size)
        active: List[Dict[str, Any]] = [record.to_dict() for record in self._registry.list_active()]
        subscription.deliver(build_event(EventType.ACTIVE_RUNS_SNAPSHOT, None, active))
        self._subscribers.add(subscription)
        logger.debug("Subscriber %s connected (%d active runs in snapshot)", subscription.id, len(active))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.discard(subscription)
            logger.debug("Subscriber %s disconnected", subscription.id)
        subscription.close()

    def publish(self, event: Dict[str, Any]) -> None:
        for subscription in list(self._subscribers):
            if subscription.deliver(event):
                continue
            self._subscribers.discard(subscription)
            logger.warning("Dropped subscriber %s: queue closed or overflowed", subscription.id)
