"""Request supersession and debouncing for pan/zoom/filter changes.

  - CancellationScope: at most one in-flight call per request stream. Starting
    a new call cancels the previous one; the superseded caller gets
    ``asyncio.CancelledError`` and its results are never applied.
  - CoalescingScheduler: fires a callback once the input has been quiet for
    ``delay`` seconds, with the newest token only.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, Generic, TypeVar

from observation_atlas.clock import Clock, system_clock

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationScope:
    """Single-slot task holder; a new :meth:`run` cancels the running one."""

    def __init__(self) -> None:
        self._task: asyncio.Task[Any] | None = None
        self.generation = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            _logger.debug("Cancelling superseded request (generation %d)", self.generation)
            self._task.cancel()
        self._task = None

    async def run(self, coro: Coroutine[Any, Any, T]) -> T:
        self.cancel()
        self.generation += 1
        task: asyncio.Task[T] = asyncio.ensure_future(coro)
        self._task = task
        try:
            return await task
        finally:
            if self._task is task:
                self._task = None


class CoalescingScheduler(Generic[T]):
    """Debounce: only the last token submitted within ``delay`` is delivered."""

    def __init__(
        self,
        callback: Callable[[T], Awaitable[Any]],
        *,
        delay: float = 0.3,
        clock: Clock = system_clock,
    ) -> None:
        self.callback = callback
        self.delay = delay
        self.clock = clock
        self._pending: asyncio.Task[None] | None = None
        self._fired: asyncio.Task[Any] | None = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def submit(self, token: T) -> asyncio.Task[None]:
        """Schedule ``token``, replacing any token still waiting out its delay."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.ensure_future(self._fire_later(token))
        return self._pending

    async def _fire_later(self, token: T) -> None:
        await self.clock.sleep(self.delay)
        await self.callback(token)

    def cancel(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
