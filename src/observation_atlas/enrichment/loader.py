"""
Progressive detail loading for the visible subset of items.

Two ways in:

``load(item)`` / ``refresh(item)``
    Read-through cache, then a single FIFO queue drained by one worker that
    starts at most one fetch per ``min_interval`` seconds. Every consumer
    shares that queue, so the upstream sees one global rate. A failed fetch
    goes back on the queue after ``2 ** retry_count`` seconds, up to
    ``max_retries`` times; after that the item resolves to the source's
    fallback value.

``enrich_batches(items)``
    Bulk enrichment of a list: items are fetched ``batch_size`` at a time in
    parallel, with ``batch_delay`` seconds between batches. Results are
    yielded as they complete.

Per-item state: QUEUED -> FETCHING -> CACHED | RETRYING -> FETCHING | FAILED.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Any

from observation_atlas.clock import Clock, system_clock
from observation_atlas.enrichment.queue import (
    IN_FLIGHT,
    MAX_RETRIES,
    FetchQueueItem,
    FetchState,
    next_delay,
)
from observation_atlas.enrichment.sources import FETCH_ERRORS, DetailSource
from observation_atlas.exceptions import CacheCorrupt
from observation_atlas.store import DEFAULT_TTL, Cache

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadResult:
    """Outcome of enriching one item."""

    item_id: str
    value: Any
    failed: bool = False
    from_cache: bool = False


# Caller item and the future its result goes to
Waiter = tuple[Any, asyncio.Future[LoadResult]]


class ProgressiveDetailLoader:
    """Rate-limited, retrying, cached loader for one :class:`DetailSource`."""

    def __init__(
        self,
        source: DetailSource,
        cache: Cache,
        *,
        clock: Clock = system_clock,
        ttl: float = DEFAULT_TTL,
        max_retries: int = MAX_RETRIES,
        min_interval: float = 1.0,
        batch_size: int = 2,
        batch_delay: float = 1.0,
    ) -> None:
        self.source = source
        self.cache = cache
        self.clock = clock
        self.ttl = ttl
        self.max_retries = max_retries
        self.min_interval = min_interval
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay

        self._queue: asyncio.Queue[FetchQueueItem] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._timers: set[asyncio.Task[None]] = set()
        self._waiters: dict[str, list[Waiter]] = defaultdict(list)
        self._deferred_refresh: dict[str, list[Waiter]] = defaultdict(list)
        self._states: dict[str, FetchState] = {}
        self._last_dequeue: float | None = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def state(self, item: Any) -> FetchState | None:
        return self._states.get(self.source.key_for(item))

    @property
    def pending(self) -> int:
        """Items queued, fetching or waiting to retry."""
        return sum(1 for state in self._states.values() if state in IN_FLIGHT)

    def cached(self, item: Any) -> Any | None:
        """Return the decoded cached value, or None on miss.

        Stale and unreadable entries are deleted and read as misses.
        """
        key = self.source.key_for(item)
        payload = self.cache.get(key)
        if payload is None:
            return None
        if self.source.is_stale(item, payload):
            _logger.debug("Stale %s cache entry %s", self.source.name, key)
            self.cache.delete(key)
            return None
        try:
            return self.source.decode(key, payload)
        except CacheCorrupt as e:
            _logger.warning("Dropping %s", e)
            self.cache.delete(key)
            return None

    # -------------------------------------------------------------------------
    # Queued loading
    # -------------------------------------------------------------------------

    async def load(self, item: Any) -> LoadResult:
        """Cached value if fresh, otherwise queue the item and wait for it."""
        value = self.cached(item)
        if value is not None:
            self._states[self.source.key_for(item)] = FetchState.CACHED
            return LoadResult(self.source.item_id(item), value, from_cache=True)
        return await self._enqueue(item)

    async def refresh(self, item: Any) -> LoadResult:
        """Purge the cache entry and re-queue, skipping the cache check.

        If a fetch for the same key is already running, a new one is queued
        once it finishes, so the result never predates the refresh.
        """
        key = self.source.key_for(item)
        self.cache.delete(key)
        if self._states.get(key) is FetchState.FETCHING:
            future: asyncio.Future[LoadResult] = asyncio.get_running_loop().create_future()
            self._deferred_refresh[key].append((item, future))
            return await future
        return await self._enqueue(item)

    def _enqueue(self, item: Any) -> asyncio.Future[LoadResult]:
        key = self.source.key_for(item)
        future: asyncio.Future[LoadResult] = asyncio.get_running_loop().create_future()
        self._waiters[key].append((item, future))
        if self._states.get(key) in IN_FLIGHT:
            # Same request already queued; share its result
            return future

        self._states[key] = FetchState.QUEUED
        self._get_queue().put_nowait(FetchQueueItem(item=item, key=key))
        self._ensure_worker()
        return future

    def _get_queue(self) -> asyncio.Queue[FetchQueueItem]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.ensure_future(self._run())

    async def _wait_for_slot(self) -> None:
        if self._last_dequeue is None:
            return
        wait = self.min_interval - (self.clock.monotonic() - self._last_dequeue)
        if wait > 0:
            await self.clock.sleep(wait)

    async def _run(self) -> None:
        queue = self._get_queue()
        while True:
            entry = await queue.get()
            try:
                await self._wait_for_slot()
                self._last_dequeue = self.clock.monotonic()
                await self._process(entry)
            finally:
                queue.task_done()

    async def _process(self, entry: FetchQueueItem) -> None:
        entry.state = FetchState.FETCHING
        self._states[entry.key] = FetchState.FETCHING
        entry.attempts += 1
        try:
            value = await self.source.fetch(entry.item)
        except FETCH_ERRORS as e:
            entry.errors.append(str(e))
            self._on_failure(entry, e)
            return
        except Exception as e:
            # Not a fetch failure: hand it to the callers, keep the worker alive
            self._states.pop(entry.key, None)
            self._resolve(entry.key, error=e)
            return

        self.cache.set(entry.key, self.source.encode(value), self.ttl)
        entry.state = FetchState.CACHED
        self._states[entry.key] = FetchState.CACHED
        self._resolve(entry.key, value)

    def _on_failure(self, entry: FetchQueueItem, error: Exception) -> None:
        item_id = self.source.item_id(entry.item)
        if entry.retry_count < self.max_retries:
            delay = next_delay(entry.retry_count)
            entry.retry_count += 1
            entry.state = FetchState.RETRYING
            self._states[entry.key] = FetchState.RETRYING
            _logger.info(
                "Retrying %s %s in %.0fs (%d/%d): %s",
                self.source.name,
                item_id,
                delay,
                entry.retry_count,
                self.max_retries,
                error,
            )
            timer = asyncio.ensure_future(self._requeue_later(entry, delay))
            self._timers.add(timer)
            timer.add_done_callback(self._timers.discard)
            return

        entry.state = FetchState.FAILED
        self._states[entry.key] = FetchState.FAILED
        _logger.warning(
            "Giving up on %s %s (%s) after %d attempts: %s",
            self.source.name,
            item_id,
            entry.key,
            entry.attempts,
            error,
        )
        self._resolve(entry.key, failed=True)

    async def _requeue_later(self, entry: FetchQueueItem, delay: float) -> None:
        await self.clock.sleep(delay)
        entry.state = FetchState.QUEUED
        self._states[entry.key] = FetchState.QUEUED
        self._get_queue().put_nowait(entry)
        self._ensure_worker()

    def _resolve(
        self,
        key: str,
        value: Any = None,
        *,
        failed: bool = False,
        error: BaseException | None = None,
    ) -> None:
        """Settle every waiter on ``key``, each with its own item id and fallback."""
        for item, future in self._waiters.pop(key, []):
            if future.done():
                continue
            if error is not None:
                future.set_exception(error)
            elif failed:
                future.set_result(
                    LoadResult(self.source.item_id(item), self.source.fallback(item), failed=True)
                )
            else:
                future.set_result(LoadResult(self.source.item_id(item), value))
        self._start_deferred_refresh(key)

    def _start_deferred_refresh(self, key: str) -> None:
        waiters = self._deferred_refresh.pop(key, [])
        if not waiters:
            return
        self.cache.delete(key)
        self._waiters[key].extend(waiters)
        self._states[key] = FetchState.QUEUED
        self._get_queue().put_nowait(FetchQueueItem(item=waiters[0][0], key=key))
        self._ensure_worker()

    async def close(self) -> None:
        """Stop the worker and pending retries; unresolved waiters are cancelled."""
        tasks = [t for t in (self._worker, *self._timers) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._worker = None
        self._timers.clear()
        for waiters in (*self._waiters.values(), *self._deferred_refresh.values()):
            for _, future in waiters:
                future.cancel()
        self._waiters.clear()
        self._deferred_refresh.clear()
        for key, state in list(self._states.items()):
            if state in IN_FLIGHT:
                del self._states[key]

    # -------------------------------------------------------------------------
    # Batch loading
    # -------------------------------------------------------------------------

    async def _attempt(self, entry: FetchQueueItem) -> tuple[FetchQueueItem, Any, Exception | None]:
        entry.attempts += 1
        entry.state = FetchState.FETCHING
        try:
            value = await self.source.fetch(entry.item)
        except FETCH_ERRORS as e:
            return entry, None, e
        return entry, value, None

    async def enrich_batches(self, items: Iterable[Any]) -> AsyncIterator[LoadResult]:
        """Enrich ``items`` in parallel groups of ``batch_size``.

        Cache hits are yielded first without any fetch. Failed items go to
        the back of the line and become eligible again after their backoff.
        """
        pending: list[tuple[float, FetchQueueItem]] = []
        for item in items:
            value = self.cached(item)
            if value is not None:
                yield LoadResult(self.source.item_id(item), value, from_cache=True)
                continue
            pending.append((0.0, FetchQueueItem(item=item, key=self.source.key_for(item))))

        first = True
        while pending:
            now = self.clock.monotonic()
            ready = [p for p in pending if p[0] <= now][: self.batch_size]
            if not ready:
                await self.clock.sleep(min(p[0] for p in pending) - now)
                continue
            if not first:
                await self.clock.sleep(self.batch_delay)
            first = False
            for p in ready:
                pending.remove(p)

            outcomes = await asyncio.gather(*(self._attempt(entry) for _, entry in ready))
            for entry, value, error in outcomes:
                item_id = self.source.item_id(entry.item)
                if error is None:
                    self.cache.set(entry.key, self.source.encode(value), self.ttl)
                    entry.state = FetchState.CACHED
                    yield LoadResult(item_id, value)
                elif entry.retry_count < self.max_retries:
                    ready_at = self.clock.monotonic() + next_delay(entry.retry_count)
                    entry.retry_count += 1
                    entry.state = FetchState.RETRYING
                    _logger.info("Retrying %s %s: %s", self.source.name, item_id, error)
                    pending.append((ready_at, entry))
                else:
                    entry.state = FetchState.FAILED
                    _logger.warning(
                        "Giving up on %s %s after %d attempts: %s",
                        self.source.name,
                        item_id,
                        entry.attempts,
                        error,
                    )
                    yield LoadResult(item_id, self.source.fallback(entry.item), failed=True)
