"""Fan-out hub: one inbound stream, many independent bounded subscriber queues."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from .errors import SubscriberOverflowError, SubscriptionClosed

log = logging.getLogger(__name__)

_CLOSED = object()


class SubscriberHandle:
    """A subscriber's private, ordered view of the hub."""

    def __init__(self, subscriber_id: int, backlog: int) -> None:
        self.id = subscriber_id
        self._bound = backlog
        # one extra slot so the close marker always fits
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=backlog + 1)
        self._error: Optional[BaseException] = None
        self._closed = False
        self._closed_event = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def error(self) -> Optional[BaseException]:
        """Set when the hub dropped this subscriber rather than deregistering it."""
        return self._error

    @property
    def backlog(self) -> int:
        n = self._queue.qsize()
        return n - 1 if self._closed and n else n

    def _offer(self, message: Any) -> bool:
        if self._queue.qsize() >= self._bound:
            return False
        self._queue.put_nowait(message)
        return True

    def _close(self, error: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        # buffered-but-undelivered messages are discarded
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        self._closed_event.set()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def get(self) -> Any:
        """Wait for the next message.

        Raises SubscriberOverflowError if the hub dropped this subscriber,
        SubscriptionClosed after a regular deregistration.
        """
        item = await self._queue.get()
        if item is _CLOSED:
            # keep the marker so later reads see the same outcome
            self._queue.put_nowait(_CLOSED)
            if self._error is not None:
                raise self._error
            raise SubscriptionClosed(f"subscriber {self.id} deregistered")
        return item

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration from None

    def __repr__(self) -> str:
        return f"<SubscriberHandle id={self.id} backlog={self.backlog} closed={self._closed}>"


class FanoutHub:
    def __init__(self, backlog: int = 256) -> None:
        if backlog < 1:
            raise ValueError("backlog must be >= 1")
        self._backlog = backlog
        self._subscribers: Dict[int, SubscriberHandle] = {}
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._published = 0
        self._dropped = 0
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def published(self) -> int:
        return self._published

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    async def register(self) -> SubscriberHandle:
        """New subscriber; after close() the handle comes back already closed."""
        handle = SubscriberHandle(next(self._ids), self._backlog)
        async with self._lock:
            if self._closed:
                handle._close()
                return handle
            self._subscribers[handle.id] = handle
        log.debug("subscriber %d registered", handle.id)
        return handle

    async def deregister(self, handle: SubscriberHandle) -> None:
        async with self._lock:
            self._subscribers.pop(handle.id, None)
        if not handle.closed:
            log.debug("subscriber %d deregistered", handle.id)
        handle._close()

    async def publish(self, message: Any) -> int:
        """Offer message to every registered subscriber; never waits on a consumer."""
        delivered = 0
        overflowed: List[SubscriberHandle] = []
        async with self._lock:
            self._published += 1
            for handle in list(self._subscribers.values()):
                if handle._offer(message):
                    delivered += 1
                else:
                    del self._subscribers[handle.id]
                    overflowed.append(handle)
        for handle in overflowed:
            self._dropped += 1
            log.warning("subscriber %d too slow (backlog %d), dropping", handle.id, self._backlog)
            handle._close(SubscriberOverflowError(handle.id, self._backlog))
        return delivered

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
            handles = list(self._subscribers.values())
            self._subscribers.clear()
        for handle in handles:
            handle._close()
