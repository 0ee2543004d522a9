"""
Progress Channel: Typed Transfer Progress Events

Transfers publish ProgressEvents; the consumer iterates the channel
with ``async for``. The channel is bounded and coalescing: when the
consumer falls behind, the oldest undelivered event is dropped, since
a newer event for the same transfer supersedes it. The final
``done`` event is never dropped in favour of an older one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Bytes acknowledged for one transfer."""
    key: str
    loaded: int
    total: int
    done: bool = False

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 100.0 if self.done else 0.0
        return min(100.0, self.loaded * 100.0 / self.total)


class _Closed:
    __slots__ = ()


_CLOSED = _Closed()


class ProgressChannel:
    """
    Single-consumer stream of ProgressEvents.

    publish() never blocks the transfer; close() ends iteration once
    the queued events have been consumed.
    """

    __slots__ = ("_queue", "_closed", "_latest", "_published")

    def __init__(self, maxsize: int = 256) -> None:
        if maxsize < 2:
            raise ValueError("maxsize must be >= 2")
        self._queue: asyncio.Queue[Union[ProgressEvent, _Closed]] = asyncio.Queue(maxsize)
        self._closed = False
        self._latest: Optional[ProgressEvent] = None
        self._published = 0

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        self._put(event)
        self._latest = event
        self._published += 1

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._put(_CLOSED)

    def _put(self, item: Union[ProgressEvent, _Closed]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def pending(self) -> list[ProgressEvent]:
        """Remove and return every queued event without waiting."""
        events: list[ProgressEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if isinstance(item, ProgressEvent):
                events.append(item)
            else:
                # keep the close marker for iterators
                self._queue.put_nowait(item)
                break
        return events

    @property
    def latest(self) -> Optional[ProgressEvent]:
        return self._latest

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def published(self) -> int:
        """Events published, including any later coalesced away."""
        return self._published

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if isinstance(item, _Closed):
                return
            yield item
