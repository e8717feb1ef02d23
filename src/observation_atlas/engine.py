"""
Core-facing facade used by map and grid renderers.

    engine = AtlasEngine(get_settings())
    engine.load_points(markers)
    tiles = engine.compute_tiles(None, zoom=9, viewport_bounds=bounds)
    page = await engine.fetch_merged_page([Source.FOBI], filters)
    async for event in engine.enrich_visible(page.items[:10]):
        ...

Nothing here raises upstream failures to the caller: failed sources are
exhausted, failed enrichments come back as fallback events, and invalid
shapes give empty polygon results. A fetch superseded by a newer one raises
``asyncio.CancelledError`` in the superseded caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from observation_atlas.clock import Clock, system_clock
from observation_atlas.config import Settings, get_settings
from observation_atlas.coordinator import (
    MergedPage,
    MultiSourceFetchCoordinator,
    SourceCursor,
    advance_cursors,
    initial_cursors,
)
from observation_atlas.datasources.observations import ObservationClient, ObservationFilters
from observation_atlas.enrichment import (
    LoadResult,
    PlaceNameSource,
    ProgressiveDetailLoader,
    SpeciesDetailSource,
)
from observation_atlas.exceptions import ShapeInvalid
from observation_atlas.grid import (
    Resolution,
    SpatialTileIndex,
    bucket,
    build_index,
    query_viewport,
    resolution_for,
    tiles_in_bounds,
)
from observation_atlas.polygon import PolygonQueryAdapter, validate_shape
from observation_atlas.scheduler import CoalescingScheduler
from observation_atlas.schemas import (
    Bounds,
    ItemDetail,
    Point,
    Shape,
    Source,
    Stats,
    Tile,
)
from observation_atlas.store import Cache, MemoryCache

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrichmentEvent:
    item_id: str
    detail: ItemDetail
    failed: bool = False


@dataclass
class PolygonResult:
    tiles: list[Tile] = field(default_factory=list)
    stats: Stats = field(default_factory=Stats)


@dataclass(frozen=True)
class ViewportChange:
    zoom: float
    bounds: Bounds | None


def _pad(bounds: Bounds, degrees: float) -> Bounds:
    return Bounds(
        south=max(-90.0, bounds.south - degrees),
        west=max(-180.0, bounds.west - degrees),
        north=min(90.0, bounds.north + degrees),
        east=min(180.0, bounds.east + degrees),
    )


class AtlasEngine:
    """Tiles, merged pages, enrichment and polygon queries behind one object."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: ObservationClient | None = None,
        cache: Cache | None = None,
        clock: Clock = system_clock,
        places: PlaceNameSource | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        self.client = client or ObservationClient(self.settings.api_base_url)
        self.cache = cache or MemoryCache(ttl=self.settings.cache_ttl_seconds, clock=clock)
        self.primary_source = self.settings.authoritative_source

        self.coordinator = MultiSourceFetchCoordinator(
            self.client,
            page_size=self.settings.page_size,
            primary_source=self.primary_source,
        )
        loader_options: dict[str, Any] = {
            "clock": clock,
            "ttl": self.settings.cache_ttl_seconds,
            "max_retries": self.settings.max_retries,
            "min_interval": self.settings.dequeue_interval,
            "batch_size": self.settings.batch_size,
            "batch_delay": self.settings.batch_delay,
        }
        self.details = ProgressiveDetailLoader(
            SpeciesDetailSource(self.client), self.cache, **loader_options
        )
        self.places = ProgressiveDetailLoader(
            places or PlaceNameSource(self.settings.geocode_url), self.cache, **loader_options
        )
        self.polygon = PolygonQueryAdapter(self.client, authoritative_source=self.primary_source)

        self.points: list[Point] = []
        self.index: SpatialTileIndex = SpatialTileIndex()
        self.resolution: Resolution = resolution_for(0)
        self.active_shape: Shape | None = None

    async def __aenter__(self) -> AtlasEngine:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        self.coordinator.scope.cancel()
        await self.details.close()
        await self.places.close()

    # -------------------------------------------------------------------------
    # Tiles
    # -------------------------------------------------------------------------

    def load_points(self, points: Iterable[Point]) -> None:
        """Replace the loaded point set and rebuild the viewport index."""
        self.points = list(points)
        self.index = build_index(self.points)
        _logger.info("Indexed %d of %d points", len(self.index), len(self.points))

    def compute_tiles(
        self,
        points: Sequence[Point] | None,
        zoom: Any,
        viewport_bounds: Bounds | None = None,
    ) -> list[Tile]:
        """Bucket the points in view at the resolution for ``zoom``.

        ``points=None`` uses the points given to :meth:`load_points`.
        """
        self.resolution = resolution_for(zoom)
        index = self.index if points is None else build_index(points)
        if viewport_bounds is None:
            candidates: Iterable[Point] = index
        else:
            # One tile of padding so edge tiles keep all their members
            candidates = query_viewport(index, _pad(viewport_bounds, self.resolution.degrees))
        tiles = bucket(candidates, self.resolution, authoritative_source=self.primary_source)
        return tiles_in_bounds(tiles, viewport_bounds)

    def viewport_scheduler(
        self, on_tiles: Callable[[list[Tile]], Awaitable[Any]]
    ) -> CoalescingScheduler[ViewportChange]:
        """Debounced tile recomputation for rapid pan/zoom events."""

        async def _recompute(change: ViewportChange) -> None:
            await on_tiles(self.compute_tiles(None, change.zoom, change.bounds))

        return CoalescingScheduler(
            _recompute, delay=self.settings.debounce_seconds, clock=self.clock
        )

    # -------------------------------------------------------------------------
    # Pages
    # -------------------------------------------------------------------------

    async def fetch_merged_page(
        self,
        sources: Iterable[Source] | None,
        filters: ObservationFilters | None = None,
        cursors: Sequence[SourceCursor] | None = None,
    ) -> MergedPage:
        """First page for ``sources`` or, given a previous page's cursors, the next one."""
        if cursors is None:
            return await self.coordinator.fetch_page(initial_cursors(sources), filters)
        return await self.coordinator.fetch_page(advance_cursors(cursors), filters)

    # -------------------------------------------------------------------------
    # Enrichment
    # -------------------------------------------------------------------------

    async def _place_name(self, item: Point) -> str | None:
        if getattr(item, "location_name", None):
            return item.location_name  # type: ignore[attr-defined]
        if not item.is_valid:
            return None
        result: LoadResult = await self.places.load(item)
        return result.value

    async def enrich_visible(self, items: Iterable[Point]) -> AsyncIterator[EnrichmentEvent]:
        """Yield one event per item as its detail (and place name) arrive."""
        items = list(items)
        place_tasks = {item.dedup_key: asyncio.ensure_future(self._place_name(item)) for item in items}
        try:
            async for result in self.details.enrich_batches(items):
                detail: ItemDetail = result.value
                task = place_tasks.get(result.item_id)
                if task is not None:
                    detail = detail.model_copy(update={"location_name": await task})
                yield EnrichmentEvent(result.item_id, detail, failed=result.failed)
        finally:
            for task in place_tasks.values():
                task.cancel()

    # -------------------------------------------------------------------------
    # Polygon
    # -------------------------------------------------------------------------

    async def apply_polygon(
        self, shape: Shape, source_filter: Iterable[Source | str] | None = None
    ) -> PolygonResult:
        """Tiles and stats inside ``shape``; empty result if the shape is invalid."""
        try:
            validate_shape(shape)
        except ShapeInvalid as e:
            _logger.warning("Rejected drawn shape: %s", e)
            return PolygonResult()

        if shape != self.active_shape:
            self.polygon.clear()
            self.active_shape = shape
        sources = list(source_filter) if source_filter else None
        tiles = await self.polygon.grids_in_polygon(
            shape, sources, points=self.points, resolution=self.resolution
        )
        stats = await self.polygon.stats_in_polygon(shape, sources, points=self.points)
        return PolygonResult(tiles=tiles, stats=stats)

    def clear_polygon(self) -> None:
        self.active_shape = None
        self.polygon.clear()
