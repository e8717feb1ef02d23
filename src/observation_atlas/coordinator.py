"""
Multi-source pagination: fetch, merge, dedup and sort observation pages.

Each source paginates independently. A round queries every source whose
cursor still has more pages, all in parallel, then merges the results into
one accumulated list that is:

  - unique by dedup key (``source:id``), checked against everything already
    accumulated, not only the new batch
  - re-sorted with one global sort key after every append

A failed source is treated as exhausted for the rest of the session so
loading always terminates. Starting a new round cancels a round still in
flight; the cancelled round's results are never merged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from observation_atlas.datasources.observations import (
    ObservationClient,
    ObservationFilters,
    SourcePage,
    fetch_source_page,
)
from observation_atlas.exceptions import SourceUnavailable
from observation_atlas.scheduler import CancellationScope
from observation_atlas.schemas import ALL_SOURCES, Observation, Source, parse_sources

_logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 30

SortKey = Callable[[Observation], Any]

_EPOCH = datetime.min.replace(tzinfo=UTC)

# =============================================================================
# Cursors and results
# =============================================================================


@dataclass(frozen=True)
class SourceCursor:
    """Pagination position of one source. ``has_more=False`` is terminal."""

    source: Source
    page: int = 1
    has_more: bool = True
    total_known: int = 0


@dataclass
class MergedPage:
    """Result of one round: the full accumulated list plus next cursors."""

    items: list[Observation]
    cursors: list[SourceCursor]
    has_more: bool
    total_count: int
    added: int = 0
    failed_sources: list[Source] = field(default_factory=list)


def initial_cursors(sources: Iterable[Source] | None = None) -> list[SourceCursor]:
    return [SourceCursor(source=s) for s in parse_sources(list(sources) if sources else None)]


def advance_cursors(cursors: Iterable[SourceCursor]) -> list[SourceCursor]:
    """Bump the page of every source that still has more; others are untouched."""
    return [replace(c, page=c.page + 1) if c.has_more else c for c in cursors]


# =============================================================================
# Sorting
# =============================================================================


def _timestamp(value: datetime | None) -> datetime:
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def sort_key_for(field_name: str = "observed_at") -> SortKey:
    """Sort by ``observed_at`` or ``created_at``, falling back to the other.

    Ties on the primary timestamp are broken by the other one. Items with
    neither timestamp sort as oldest.
    """
    other = "created_at" if field_name == "observed_at" else "observed_at"

    def key(item: Observation) -> tuple[datetime, datetime]:
        primary = getattr(item, field_name) or getattr(item, other)
        secondary = getattr(item, other) or getattr(item, field_name)
        return (_timestamp(primary), _timestamp(secondary))

    return key


default_sort_key = sort_key_for("observed_at")


def merge_items(
    existing: Sequence[Observation],
    incoming: Iterable[Observation],
    *,
    sort_key: SortKey = default_sort_key,
    descending: bool = True,
) -> tuple[list[Observation], int]:
    """Append the not-yet-seen ``incoming`` items and re-sort everything.

    Returns:
        ``(merged, added)`` where ``added`` is the number of new items.
    """
    seen = {item.dedup_key for item in existing}
    merged = list(existing)
    added = 0
    for item in incoming:
        if item.dedup_key in seen:
            continue
        seen.add(item.dedup_key)
        merged.append(item)
        added += 1
    merged.sort(key=sort_key, reverse=descending)
    return merged, added


# =============================================================================
# Coordinator
# =============================================================================


class MultiSourceFetchCoordinator:
    """Stateful pager over several observation sources.

    Args:
        client: Backend client; called from worker threads.
        sources: Active sources (default: all three).
        page_size: ``per_page`` sent to each source.
        primary_source: When it is queried in a round, the other sources are
            asked to leave out its records. ``None`` disables exclusion.
        sort_key: Global sort key; default is observation date with upload
            date as tie-breaker.
        descending: Newest first when True.
    """

    def __init__(
        self,
        client: ObservationClient,
        *,
        sources: Iterable[Source] | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        primary_source: Source | None = Source.FOBI,
        sort_key: SortKey = default_sort_key,
        descending: bool = True,
    ) -> None:
        self.client = client
        self.page_size = page_size
        self.primary_source = primary_source
        self.sort_key = sort_key
        self.descending = descending
        self.scope = CancellationScope()
        self.items: list[Observation] = []
        self.cursors: list[SourceCursor] = initial_cursors(sources)

    @property
    def has_more(self) -> bool:
        return any(c.has_more for c in self.cursors)

    @property
    def total_count(self) -> int:
        return sum(c.total_known for c in self.cursors)

    def reset(self, sources: Iterable[Source] | None = None) -> None:
        """Start over at page 1, dropping accumulated items."""
        self.scope.cancel()
        if sources is None:
            sources = [c.source for c in self.cursors] or list(ALL_SOURCES)
        self.cursors = initial_cursors(sources)
        self.items = []

    def advance(self) -> None:
        self.cursors = advance_cursors(self.cursors)

    def set_sort(self, sort_key: SortKey, *, descending: bool = True) -> None:
        """Change the global order and re-sort what is already loaded."""
        self.sort_key = sort_key
        self.descending = descending
        self.items.sort(key=sort_key, reverse=descending)

    async def fetch_page(
        self,
        cursors: Sequence[SourceCursor] | None = None,
        filters: ObservationFilters | None = None,
        page_size: int | None = None,
    ) -> MergedPage:
        """Run one round and merge it into the accumulated list.

        With ``cursors``, the round starts from them; fresh cursors (all on
        page 1 with more to fetch) start a new list. Without, the
        coordinator's own cursors are used. A newer call cancels this one, which then raises
        ``asyncio.CancelledError`` without touching the accumulated state.
        """
        if cursors is not None:
            if all(c.page == 1 and c.has_more for c in cursors):
                self.items = []
            self.cursors = list(cursors)
        return await self.scope.run(self._round(filters, page_size or self.page_size))

    async def load_more(self, filters: ObservationFilters | None = None) -> MergedPage:
        """Advance to the next page of every source that has more and fetch it."""
        self.advance()
        return await self.fetch_page(filters=filters)

    async def _round(self, filters: ObservationFilters | None, page_size: int) -> MergedPage:
        cursors = list(self.cursors)
        active = [c for c in cursors if c.has_more]
        if not active:
            return self._result(cursors, added=0, failed=[])

        queried = {c.source for c in active}
        exclude = self.primary_source if self.primary_source in queried else None

        pages = await asyncio.gather(
            *(self._fetch_one(c, filters, page_size, exclude) for c in active)
        )

        # Nothing below awaits, so a superseding call cannot interleave
        by_source = {page.source: page for page in pages}
        next_cursors: list[SourceCursor] = []
        incoming: list[Observation] = []
        failed: list[Source] = []
        for cursor in cursors:
            page = by_source.get(cursor.source)
            if page is None:
                next_cursors.append(cursor)
                continue
            incoming.extend(page.items)
            if page.failed:
                failed.append(cursor.source)
                next_cursors.append(replace(cursor, has_more=False))
            else:
                next_cursors.append(replace(cursor, has_more=page.has_more, total_known=page.total))

        self.items, added = merge_items(
            self.items, incoming, sort_key=self.sort_key, descending=self.descending
        )
        self.cursors = next_cursors
        _logger.debug(
            "Merged round: %d new items from %s (total %d, failed %s)",
            added,
            ",".join(sorted(queried)),
            len(self.items),
            failed or "none",
        )
        return self._result(next_cursors, added=added, failed=failed)

    async def _fetch_one(
        self,
        cursor: SourceCursor,
        filters: ObservationFilters | None,
        page_size: int,
        primary: Source | None,
    ) -> SourcePage:
        exclude = primary if primary is not None and cursor.source != primary else None
        try:
            return await asyncio.to_thread(
                fetch_source_page,
                self.client,
                cursor.source,
                cursor.page,
                per_page=page_size,
                filters=filters,
                exclude=exclude,
            )
        except SourceUnavailable as e:
            _logger.warning("Source %s page %d unavailable: %s", cursor.source, cursor.page, e)
            return SourcePage.unavailable(cursor.source)

    def _result(self, cursors: list[SourceCursor], *, added: int, failed: list[Source]) -> MergedPage:
        return MergedPage(
            items=list(self.items),
            cursors=list(cursors),
            has_more=any(c.has_more for c in cursors),
            total_count=sum(c.total_known for c in cursors),
            added=added,
            failed_sources=failed,
        )
