"""
Cancellable subscriptions over registry events.
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """
    Async iterator fed by a producer through ``put``.

    ``cancel`` stops delivery, wakes up any pending consumer, and runs the
    release callback exactly once.
    """

    def __init__(self, on_cancel: Optional[Callable[["Subscription[T]"], None]] = None, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def put(self, item: T) -> None:
        """Deliver an item; silently dropped once cancelled."""
        if self._cancelled:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Subscription queue full, dropping event")

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        # Drain pending items so the sentinel is the next thing a consumer sees
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        if self._on_cancel is not None:
            self._on_cancel(self)

    async def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Wait for the next item; None after cancellation."""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            # Keep the sentinel for any other waiter
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()
