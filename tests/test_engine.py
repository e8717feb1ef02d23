"""Tests for the AtlasEngine facade."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import Mock, patch

import requests

from observation_atlas.config import Settings
from observation_atlas.coordinator import initial_cursors
from observation_atlas.datasources.observations import ObservationClient
from observation_atlas.engine import AtlasEngine, ViewportChange
from observation_atlas.grid import Resolution
from observation_atlas.schemas import Bounds, CircleShape, PolygonShape, Source, Stats, Tile

from .conftest import make_observation, make_point
from .test_coordinator import FakeBackend, page_of

if TYPE_CHECKING:
    from .conftest import FakeClock

BASE = "https://atlas.example.org/api"


def make_engine(clock: FakeClock, session: Mock | None = None, **overrides: Any) -> AtlasEngine:
    settings = Settings(api_base_url=BASE, **overrides)
    client = ObservationClient(BASE, session=session or Mock())
    return AtlasEngine(settings, client=client, clock=clock)


class TestComputeTiles:
    """Viewport tiling."""

    def test_whole_world(self, clock: FakeClock) -> None:
        engine = make_engine(clock)
        engine.load_points([make_point(1, 0.1, 0.1), make_point(2, 10.1, 10.1), make_point(3, None, 1)])
        tiles = engine.compute_tiles(None, zoom=0)
        assert engine.resolution is Resolution.EXTREMELY_LARGE
        assert sum(t.count for t in tiles) == 2

    def test_viewport_keeps_edge_tile_members(self, clock: FakeClock) -> None:
        """A tile straddling the viewport edge counts members outside it."""
        engine = make_engine(clock)
        engine.load_points(
            [make_point(1, 0.2, 0.2), make_point(2, 1.2, 0.2), make_point(3, 1.4, 0.2), make_point(4, 10.2, 10.2)]
        )
        tiles = engine.compute_tiles(None, zoom=0, viewport_bounds=Bounds(south=0, west=0, north=1, east=1))
        counts = {t.bucket_key: t.count for t in tiles}
        assert counts == {"0_0": 1, "2_0": 2}

    def test_zoom_changes_resolution(self, clock: FakeClock) -> None:
        engine = make_engine(clock)
        points = [make_point(1, 0.001, 0.001), make_point(2, 0.009, 0.009)]
        assert len(engine.compute_tiles(points, zoom=0)) == 1
        assert len(engine.compute_tiles(points, zoom=14)) == 2
        assert engine.resolution is Resolution.TINY

    def test_garbage_zoom(self, clock: FakeClock) -> None:
        engine = make_engine(clock)
        engine.compute_tiles([], zoom="far")
        assert engine.resolution is Resolution.EXTREMELY_LARGE


class TestViewportScheduler:
    async def test_coalesces_changes(self, clock: FakeClock) -> None:
        engine = make_engine(clock)
        engine.load_points([make_point(1, 0.1, 0.1)])
        delivered: list[list[Tile]] = []

        async def on_tiles(tiles: list[Tile]) -> None:
            delivered.append(tiles)

        scheduler = engine.viewport_scheduler(on_tiles)
        scheduler.submit(ViewportChange(zoom=3, bounds=None))
        last = scheduler.submit(ViewportChange(zoom=14, bounds=None))
        await last
        assert len(delivered) == 1
        assert engine.resolution is Resolution.TINY
        assert clock.sleeps[-1] == 0.3


class TestFetchMergedPage:
    async def test_first_and_next_page(self, clock: FakeClock) -> None:
        backend = FakeBackend(
            {
                (Source.KUPUNESIA, 1): page_of(Source.KUPUNESIA, 30, total=40, has_more=True),
                (Source.KUPUNESIA, 2): page_of(Source.KUPUNESIA, 10, total=40, has_more=False, start=30, day=2),
            }
        )
        async with make_engine(clock) as engine:
            with patch("observation_atlas.coordinator.fetch_source_page", side_effect=backend):
                first = await engine.fetch_merged_page([Source.KUPUNESIA])
                second = await engine.fetch_merged_page(None, cursors=first.cursors)
        assert len(first.items) == 30
        assert len(second.items) == 40
        assert second.has_more is False
        assert [c[:2] for c in backend.calls] == [(Source.KUPUNESIA, 1), (Source.KUPUNESIA, 2)]

    async def test_primary_source_from_settings(self, clock: FakeClock) -> None:
        backend = FakeBackend({})
        async with make_engine(clock, primary_source=None) as engine:
            with patch("observation_atlas.coordinator.fetch_source_page", side_effect=backend):
                await engine.fetch_merged_page(None)
        assert all(exclude is None for _, _, exclude in backend.calls)
        assert len(backend.calls) == 3

    async def test_exhausted_cursors_make_no_requests(self, clock: FakeClock) -> None:
        backend = FakeBackend({})
        cursors = [c.__class__(c.source, has_more=False) for c in initial_cursors([Source.FOBI])]
        async with make_engine(clock) as engine:
            with patch("observation_atlas.coordinator.fetch_source_page", side_effect=backend):
                page = await engine.fetch_merged_page(None, cursors=cursors)
        assert backend.calls == []
        assert page.has_more is False


class TestEnrichVisible:
    """Detail and place-name enrichment for visible items."""

    async def test_events_with_place_names(self, clock: FakeClock) -> None:
        session = Mock()
        session.get.return_value.json.return_value = {"checklist": {"id": 1}, "species": [{"nameLat": "Gallus"}]}
        items = [
            make_observation(1, Source.BURUNGNESIA, latitude=-6.6, longitude=106.8),
            make_observation(2, Source.KUPUNESIA, latitude=-8.5, longitude=115.2, location_name="Ubud, Bali"),
        ]
        with patch(
            "observation_atlas.enrichment.sources.reverse_geocode", return_value="Bogor, Jawa Barat"
        ) as mock_geocode:
            async with make_engine(clock, session=session) as engine:
                events = [e async for e in engine.enrich_visible(items)]

        by_id = {e.item_id: e for e in events}
        assert set(by_id) == {"burungnesia:1", "kupunesia:2"}
        assert by_id["burungnesia:1"].detail.location_name == "Bogor, Jawa Barat"
        assert by_id["burungnesia:1"].detail.species == [{"nameLat": "Gallus"}]
        assert by_id["kupunesia:2"].detail.location_name == "Ubud, Bali"
        assert mock_geocode.call_count == 1

    async def test_failed_detail_gives_fallback(self, clock: FakeClock) -> None:
        session = Mock()
        session.get.side_effect = requests.ConnectionError("down")
        items = [make_observation(1, Source.KUPUNESIA, location_name="Ubud, Bali")]
        async with make_engine(clock, session=session, max_retries=1) as engine:
            events = [e async for e in engine.enrich_visible(items)]
        assert len(events) == 1
        assert events[0].failed
        assert events[0].detail.species == []
        assert events[0].detail.location_name == "Ubud, Bali"


class TestApplyPolygon:
    """Shape queries through the engine."""

    async def test_invalid_shape_gives_empty_result(self, clock: FakeClock) -> None:
        async with make_engine(clock) as engine:
            result = await engine.apply_polygon(CircleShape(center=(0.0, 0.0), radius=-1))
        assert result.tiles == []
        assert result.stats == Stats()

    async def test_local_fallback(self, clock: FakeClock) -> None:
        session = Mock()
        session.post.side_effect = requests.ConnectionError("down")
        square = PolygonShape(ring=((0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0)))
        async with make_engine(clock, session=session) as engine:
            engine.load_points(
                [make_point(1, 0.5, 0.5, Source.FOBI), make_point(2, 0.4, 0.4, Source.KUPUNESIA), make_point(3, 9, 9)]
            )
            result = await engine.apply_polygon(square)
            filtered = await engine.apply_polygon(square, [Source.KUPUNESIA])
        assert sum(t.count for t in result.tiles) == 2
        assert result.stats == Stats(fobi=1, kupunesia=1, observations=2)
        assert filtered.stats.observations == 1

    async def test_new_shape_clears_stats(self, clock: FakeClock) -> None:
        session = Mock()
        session.post.return_value.json.return_value = {"success": True, "status": "success", "stats": {"fobi": 1}}
        a = CircleShape(center=(106.8, -6.2), radius=500)
        b = CircleShape(center=(106.8, -6.2), radius=900)
        async with make_engine(clock, session=session) as engine:
            await engine.apply_polygon(a)
            assert engine.polygon.stats_loaded
            await engine.apply_polygon(b)
            assert engine.active_shape == b
            engine.clear_polygon()
            assert engine.active_shape is None
            assert not engine.polygon.stats_loaded
