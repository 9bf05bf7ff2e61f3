"""In-process broadcast of run, job and step lifecycle events."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)


class EventBus:
    """In-memory publish/subscribe bus for workflow lifecycle events.

    Every subscriber owns an asyncio.Queue and may restrict itself to a
    single run; nested reusable-workflow runs publish under their own run id.
    """

    EVENT_TYPES = {
        "run.started",
        "run.completed",
        "run.skipped",
        "job.started",
        "job.completed",
        "job.skipped",
        "step.started",
        "step.completed",
        "step.skipped",
        "cache.restored",
        "cache.saved",
        "artifact.uploaded",
    }

    def __init__(self) -> None:
        self._subscribers: dict[asyncio.Queue, str | None] = {}

    def subscribe(self, run_id: str | None = None) -> asyncio.Queue:
        """Register a queue receiving events of *run_id* (or of every run)."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=1024)
        self._subscribers[queue] = run_id
        logger.debug("EventBus: new subscriber (total=%d)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.pop(queue, None)
        logger.debug("EventBus: subscriber removed (total=%d)", len(self._subscribers))

    @contextlib.asynccontextmanager
    async def listen(self, run_id: str | None = None) -> AsyncIterator[asyncio.Queue]:
        queue = self.subscribe(run_id)
        try:
            yield queue
        finally:
            self.unsubscribe(queue)

    def publish(self, event_type: str, data: dict[str, Any]) -> None:
        """Push an event to matching subscribers without awaiting.

        Events for a full queue are dropped for that subscriber.
        """
        if event_type not in self.EVENT_TYPES:
            logger.warning("EventBus: unknown event type '%s'", event_type)

        event = {
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        run_id = data.get("run_id")
        for queue, wanted in list(self._subscribers.items()):
            if wanted is not None and wanted != run_id:
                continue
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("EventBus: dropping %s for slow subscriber", event_type)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


def drain(queue: asyncio.Queue) -> list[dict[str, Any]]:
    """Return every event currently buffered in *queue*."""
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# Singleton instance used across the application
event_bus = EventBus()
