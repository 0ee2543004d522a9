"""
In-Flight Window: Bounded Concurrent Execution

Keeps at most ``limit`` coroutines running at once. New work is
admitted as soon as any running unit finishes, so a producer (a
listing page, a sequence of multipart parts) can stream work in
without waiting for whole batches.

Fail-fast: the first failure cancels everything still running and
is re-raised to the producer from submit() or drain().

Usage:
    async with InFlightWindow(limit=10) as window:
        for part in parts:
            await window.submit(lambda p=part: upload(p))
        results = await window.drain()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InFlightWindow(Generic[T]):
    """Bounded set of concurrently running tasks."""

    __slots__ = ("_limit", "_name", "_running", "_results", "_completed", "_submitted")

    def __init__(self, limit: int, name: str = "window") -> None:
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        self._limit = limit
        self._name = name
        self._running: set[asyncio.Task[T]] = set()
        self._results: list[T] = []
        self._completed = 0
        self._submitted = 0

    async def submit(self, factory: Callable[[], Awaitable[T]]) -> None:
        """
        Start ``factory()`` once a slot is free.

        Raises the first failure of any previously submitted unit.
        """
        while len(self._running) >= self._limit:
            await self._wait_one()
        self._running.add(asyncio.ensure_future(factory()))
        self._submitted += 1

    async def drain(self) -> list[T]:
        """Wait for every submitted unit; results in completion order."""
        while self._running:
            await self._wait_one()
        return list(self._results)

    async def cancel(self) -> None:
        """Cancel all running units and wait for them to unwind."""
        if not self._running:
            return
        pending = list(self._running)
        self._running.clear()
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.debug(f"{self._name}: cancelled {len(pending)} in-flight task(s)")

    async def _wait_one(self) -> None:
        done, _ = await asyncio.wait(
            self._running, return_when=asyncio.FIRST_COMPLETED
        )
        failure: Optional[BaseException] = None
        for task in done:
            self._running.discard(task)
            if task.cancelled():
                failure = failure or asyncio.CancelledError()
                continue
            exc = task.exception()
            if exc is not None:
                failure = failure or exc
                continue
            self._results.append(task.result())
            self._completed += 1

        if failure is not None:
            await self.cancel()
            raise failure

    @property
    def completed(self) -> int:
        """Units that finished successfully so far."""
        return self._completed

    @property
    def submitted(self) -> int:
        """Units started so far, whatever their outcome."""
        return self._submitted

    @property
    def in_flight(self) -> int:
        return len(self._running)

    async def __aenter__(self) -> InFlightWindow[T]:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if self._running:
            await self.cancel()
