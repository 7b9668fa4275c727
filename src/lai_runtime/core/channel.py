"""Single-consumer channel bridging engine threads to an asyncio consumer."""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from typing import Any, Generic, TypeVar

T = TypeVar("T")

_CLOSED = object()

# How often a blocked producer re-checks whether the channel was closed.
_POLL_SECONDS = 0.05


class TokenChannel(Generic[T]):
    """Bounded hand-off with at most one pending item.

    Producers on worker threads block in ``send`` until the consumer has
    room, so nothing is buffered beyond a single event. ``close`` must be
    called from the event loop thread; after it, every ``send`` returns False
    immediately and the item is dropped, including sends that were already
    blocked waiting for room.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 1):
        self._loop = loop
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, item: T) -> bool:
        """Deliver ``item`` from a producer thread. Returns False if dropped."""
        if self._closed.is_set():
            return False
        try:
            future = asyncio.run_coroutine_threadsafe(self._put(item), self._loop)
        except RuntimeError:
            # Event loop is gone; nobody can receive any more.
            self._closed.set()
            return False
        while True:
            try:
                return future.result(timeout=_POLL_SECONDS)
            except concurrent.futures.TimeoutError:
                if self._closed.is_set():
                    future.cancel()
                    return False
            except concurrent.futures.CancelledError:
                return False

    async def asend(self, item: T) -> bool:
        """Deliver ``item`` from the event loop thread."""
        return await self._put(item)

    async def _put(self, item: T) -> bool:
        if self._closed.is_set():
            return False
        await self._queue.put(item)
        return True

    async def receive(self) -> T | None:
        """Wait for the next item; None once the channel is closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any later receive.
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(_CLOSED)
