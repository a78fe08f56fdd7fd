"""Per-document progress channels.

Delivery is at-most-once and best-effort: each subscription owns a bounded
queue, a full queue drops the event, and there is no replay for late
subscribers. All methods must be called on the event loop thread.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator

from ..log_utils import get_logger
from .models import ConversionJob, iso, utcnow

logger = get_logger(__name__)


class EventType:
    CONNECTED = "connected"
    PROGRESS = "conversion_progress"
    COMPLETE = "conversion_complete"
    ERROR = "error"
    PING = "ping"
    PONG = "pong"


@dataclass
class Subscription:
    document_id: str
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    last_liveness_ack: float = field(default_factory=time.monotonic)
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=100))
    closed: bool = False

    async def events(self) -> AsyncIterator[dict[str, object]]:
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event


class ProgressBroadcaster:
    def __init__(
        self,
        *,
        ping_interval: float = 30.0,
        ping_timeout: float = 60.0,
        queue_size: int = 100,
    ) -> None:
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._queue_size = queue_size
        self._subs: dict[str, dict[str, Subscription]] = {}
        self._task: asyncio.Task | None = None

    def subscribe(self, document_id: str) -> Subscription:
        sub = Subscription(document_id=document_id, queue=asyncio.Queue(maxsize=self._queue_size))
        self._subs.setdefault(document_id, {})[sub.connection_id] = sub
        self._deliver(sub, self._message(EventType.CONNECTED, document_id))
        logger.debug("Subscription %s attached to document %s", sub.connection_id, document_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub.closed:
            return
        sub.closed = True
        by_doc = self._subs.get(sub.document_id, {})
        by_doc.pop(sub.connection_id, None)
        if not by_doc:
            self._subs.pop(sub.document_id, None)
        # Wake the reader so its iterator ends; drop an event if needed to fit.
        if sub.queue.full():
            sub.queue.get_nowait()
        sub.queue.put_nowait(None)

    def ack(self, sub: Subscription) -> None:
        sub.last_liveness_ack = time.monotonic()

    def pong(self, sub: Subscription) -> None:
        """Answer a client ping on the subscription's own stream."""
        self.ack(sub)
        self._deliver(sub, self._message(EventType.PONG, sub.document_id))

    def subscriber_count(self, document_id: str | None = None) -> int:
        if document_id is not None:
            return len(self._subs.get(document_id, {}))
        return sum(len(by_doc) for by_doc in self._subs.values())

    def publish(self, document_id: str, event_type: str, **payload: object) -> int:
        """Send one event to every live subscriber of the document.

        Returns the number of subscribers the event was queued for.
        """
        message = self._message(event_type, document_id, **payload)
        delivered = 0
        for sub in list(self._subs.get(document_id, {}).values()):
            if self._deliver(sub, message):
                delivered += 1
        return delivered

    def publish_progress(self, job: ConversionJob) -> int:
        return self.publish(
            job.document_id,
            EventType.PROGRESS,
            progress={
                "jobId": job.job_id,
                "progress": job.progress,
                "status": job.status,
                "stage": job.stage,
                "message": job.message,
                "estimatedCompletion": iso(job.estimated_completion),
            },
        )

    def publish_complete(
        self,
        document_id: str,
        *,
        success: bool,
        total_pages: int | None = None,
        error: str | None = None,
        cached: bool = False,
    ) -> int:
        result: dict[str, object] = {"success": success, "cached": cached}
        if total_pages is not None:
            result["totalPages"] = total_pages
        if error is not None:
            result["error"] = error
        return self.publish(document_id, EventType.COMPLETE, result=result)

    def publish_error(self, document_id: str, message: str, code: str, retryable: bool) -> int:
        return self.publish(
            document_id,
            EventType.ERROR,
            error={"message": message, "code": code, "retryable": retryable},
        )

    def _message(self, event_type: str, document_id: str, **payload: object) -> dict[str, object]:
        message: dict[str, object] = {"type": event_type, "documentId": document_id}
        message.update(payload)
        message["timestamp"] = iso(utcnow())
        return message

    def _deliver(self, sub: Subscription, message: dict[str, object]) -> bool:
        if sub.closed:
            return False
        try:
            sub.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.debug("Dropping %s event for slow subscriber %s", message["type"], sub.connection_id)
            return False
        return True

    # Liveness

    def sweep(self, now: float | None = None) -> int:
        """Ping every subscription and drop the ones that stopped acking."""
        now = time.monotonic() if now is None else now
        dropped = 0
        for by_doc in list(self._subs.values()):
            for sub in list(by_doc.values()):
                if now - sub.last_liveness_ack > self._ping_timeout:
                    logger.info(
                        "Dropping stale subscription %s for document %s",
                        sub.connection_id,
                        sub.document_id,
                    )
                    self.unsubscribe(sub)
                    dropped += 1
                else:
                    self._deliver(sub, self._message(EventType.PING, sub.document_id))
        return dropped

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self._ping_interval)
            self.sweep()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._liveness_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        for by_doc in list(self._subs.values()):
            for sub in list(by_doc.values()):
                self.unsubscribe(sub)
