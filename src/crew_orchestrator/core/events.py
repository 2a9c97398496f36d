"""In-process publish/subscribe hub for broadcast events.

Each subscriber gets its own FIFO queue. A subscriber that falls more than
``max_pending`` events behind is marked overflowed and dropped; publishing
never blocks on a slow observer. Overflowed observers recover by replaying
from the task log.
"""

import asyncio
import logging
import queue
import threading
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

TASK_UPDATE = "task_update"
CLI_OUTPUT = "cli_output"
AGENT_STATUS = "agent_status"


@dataclass
class BroadcastEvent:
    type: str
    task_id: str | None
    payload: dict
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "task_id": self.task_id,
            "payload": self.payload,
            "ts": int(self.timestamp * 1000),
        }


class Subscription:
    """Blocking subscription backed by a ``queue.Queue``."""

    def __init__(self, task_id: str | None, max_pending: int):
        self.task_id = task_id
        self.max_pending = max_pending
        self.overflowed = False
        self.closed = False
        self._queue: queue.Queue = queue.Queue()

    def matches(self, event: BroadcastEvent) -> bool:
        return self.task_id is None or event.task_id == self.task_id

    def _offer(self, event: BroadcastEvent) -> bool:
        if self._queue.qsize() >= self.max_pending:
            self.overflowed = True
            return False
        self._queue.put(event)
        return True

    def _close(self):
        self.closed = True
        self._queue.put(None)

    def get(self, timeout: float | None = None) -> BroadcastEvent | None:
        """Next event, or None on timeout or once the subscription is closed."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[BroadcastEvent]:
        events = []
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return events
            if event is not None:
                events.append(event)


class AsyncSubscription(Subscription):
    """Subscription delivered into an asyncio loop from publisher threads."""

    def __init__(self, loop: asyncio.AbstractEventLoop, task_id: str | None, max_pending: int):
        super().__init__(task_id, max_pending)
        self._loop = loop
        self._aqueue: asyncio.Queue = asyncio.Queue()
        self._pending = 0
        self._pending_lock = threading.Lock()

    def _put(self, item):
        try:
            self._loop.call_soon_threadsafe(self._aqueue.put_nowait, item)
        except RuntimeError:
            # loop already closed
            self.closed = True

    def _offer(self, event: BroadcastEvent) -> bool:
        with self._pending_lock:
            if self._pending >= self.max_pending:
                self.overflowed = True
                return False
            self._pending += 1
        self._put(event)
        return not self.closed

    def _close(self):
        self.closed = True
        self._put(None)

    async def next(self) -> BroadcastEvent | None:
        """Await the next event; None means the subscription was closed."""
        item = await self._aqueue.get()
        if item is not None:
            with self._pending_lock:
                self._pending -= 1
        return item


class EventHub:
    def __init__(self, max_pending: int = 1000):
        self.max_pending = max_pending
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, task_id: str | None = None) -> Subscription:
        sub = Subscription(task_id, self.max_pending)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def subscribe_async(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        task_id: str | None = None,
    ) -> AsyncSubscription:
        sub = AsyncSubscription(loop or asyncio.get_running_loop(), task_id, self.max_pending)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
        if not sub.closed:
            sub._close()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: BroadcastEvent) -> int:
        """Deliver ``event`` to every matching subscriber. Returns the delivery count."""
        delivered = 0
        with self._lock:
            for sub in list(self._subscribers):
                if not sub.matches(event):
                    continue
                if sub._offer(event):
                    delivered += 1
                    continue
                self._subscribers.remove(sub)
                sub._close()
                if sub.overflowed:
                    logger.warning(
                        "Dropped event subscriber for %s after %d pending events",
                        sub.task_id or "all tasks", sub.max_pending,
                    )
        return delivered
