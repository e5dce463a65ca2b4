from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Generic, Optional, TypeVar

T = TypeVar("T")

# Wakes a consumer blocked on an empty queue once the channel closes
_CLOSED: Any = object()


class ChannelClosed(Exception):
    pass


class Channel(Generic[T]):
    """Bounded single-consumer ``asyncio.Queue`` with explicit close.

    Producers ``await put(item)``; once the channel is closed ``put`` returns
    False and drops the item. Closing with an exception makes the consumer's
    iteration raise it after the buffered items are drained.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(0, int(maxsize)))
        self._closed = False
        self._cancelled = False
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        """True when the consumer gave up (client disconnect)."""
        return self._cancelled

    async def put(self, item: T) -> bool:
        if self._closed:
            return False
        await self._queue.put(item)
        if self._cancelled:
            # Woken by cancel(): free the slot for the next blocked producer
            self._drop()
            return False
        return True

    def close(self, error: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # The consumer sees the closed flag once it drains the queue
            pass

    def cancel(self) -> None:
        """Consumer-side close: producers stop and buffered items are dropped."""
        self._cancelled = True
        self.close()
        self._drop()

    async def get(self) -> T:
        if self._closed and self._queue.empty():
            self._raise_closed()
        item = await self._queue.get()
        if item is _CLOSED:
            self._raise_closed()
        return item

    def _drop(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return

    def _raise_closed(self) -> None:
        if self._error is not None:
            raise self._error
        raise ChannelClosed()

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            try:
                item = await self.get()
            except ChannelClosed:
                return
            yield item
