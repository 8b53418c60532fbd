import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any

from models import JobEvent, JobEventKind

logger = logging.getLogger("worker")

EventListener = Callable[[JobEvent], None]


class JobEventBus:
    """Outbound stream of job events for one worker process.

    Listeners run inline on publish; queue subscribers drop their oldest
    event when they fall ``queue_size`` events behind.
    """

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[JobEvent]] = set()
        self._listeners: list[EventListener] = []
        self._lock = asyncio.Lock()

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    async def subscribe(self) -> asyncio.Queue[JobEvent]:
        queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subscribers.add(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[JobEvent]) -> None:
        async with self._lock:
            self._subscribers.discard(queue)

    async def publish(self, event: JobEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "event_listener_failed",
                    extra={"job_id": event.job_id, "kind": event.kind.value},
                )

        async with self._lock:
            subscribers: Iterable[asyncio.Queue[JobEvent]] = tuple(self._subscribers)

        for queue in subscribers:
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

    async def emit(
        self, job_id: str, kind: JobEventKind, **payload: Any
    ) -> JobEvent:
        event = JobEvent(job_id=job_id, kind=kind, payload=payload)
        await self.publish(event)
        return event
