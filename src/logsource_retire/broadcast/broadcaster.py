"""Best-effort fan-out of job snapshots to connected observers."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from logsource_retire.utils.serialization import json_default

logger = logging.getLogger(__name__)


class Subscription:
    """One observer's bounded queue of pending snapshots.

    When the observer falls behind, the oldest pending snapshot is dropped.
    Observers only ever need the latest state of a job.
    """

    def __init__(self, broadcaster: ProgressBroadcaster, maxsize: int) -> None:
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def offer(self, snapshot: dict[str, Any]) -> None:
        while True:
            try:
                self._queue.put_nowait(snapshot)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: float | None = None) -> dict[str, Any]:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broadcaster.unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ProgressBroadcaster:
    """Pushes every published snapshot to all current subscribers.

    There is no history: a subscriber only sees snapshots published while it
    is subscribed. Filtering by job id is left to the observer.
    """

    def __init__(self, queue_size: int = 64) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self._queue_size = queue_size
        self._subscribers: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._queue_size)
        self._subscribers.add(subscription)
        logger.debug("Observer subscribed (%d total)", len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)
        subscription.closed = True
        logger.debug("Observer unsubscribed (%d total)", len(self._subscribers))

    def publish(self, snapshot: dict[str, Any]) -> int:
        """Deliver to every subscriber without waiting. Returns the fan-out count."""
        delivered = 0
        for subscription in list(self._subscribers):
            subscription.offer(snapshot)
            delivered += 1
        return delivered


def format_sse(snapshot: dict[str, Any], event: str = "job") -> str:
    data = json.dumps(snapshot, default=json_default, ensure_ascii=False)
    return f"event: {event}\ndata: {data}\n\n"
