"""Tests for progressive detail loading."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any
from unittest.mock import Mock, patch

import pytest

from observation_atlas.datasources.observations import ObservationClient
from observation_atlas.enrichment import (
    FetchState,
    PlaceNameSource,
    ProgressiveDetailLoader,
    SpeciesDetailSource,
    next_delay,
)
from observation_atlas.exceptions import CacheCorrupt, EnrichmentFailed, GeocodeFailed
from observation_atlas.schemas import ItemDetail, Source
from observation_atlas.store import MemoryCache

from .conftest import make_point

if TYPE_CHECKING:
    from .conftest import FakeClock

BASE = "https://atlas.example.org/api"


class FakeSource:
    """Detail source with scripted failures; items are plain strings."""

    name = "fake"

    def __init__(self, failures: dict[str, int] | None = None) -> None:
        self.failures = dict(failures or {})
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.crash: Exception | None = None

    def key_for(self, item: str) -> str:
        return f"detail:{item}"

    def item_id(self, item: str) -> str:
        return item

    async def fetch(self, item: str) -> dict[str, Any]:
        self.calls.append(item)
        if self.gate is not None:
            await self.gate.wait()
        if self.crash is not None:
            raise self.crash
        if self.failures.get(item, 0) != 0:
            self.failures[item] -= 1
            raise EnrichmentFailed(item, "detail", "boom")
        return {"name": f"value-{item}"}

    def encode(self, value: dict[str, Any]) -> dict[str, Any]:
        return value

    def decode(self, key: str, payload: Any) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise CacheCorrupt(key, "not a dict")
        return payload

    def is_stale(self, item: str, payload: Any) -> bool:
        return isinstance(payload, dict) and "stale" in payload

    def fallback(self, item: str) -> dict[str, Any]:
        return {"name": "fallback"}


class SharedKeySource(FakeSource):
    """Every item maps to the same cache entry."""

    def key_for(self, item: str) -> str:
        return "detail:shared"

    def fallback(self, item: str) -> dict[str, Any]:
        return {"name": f"fallback-{item}"}


def make_loader(source: FakeSource, clock: FakeClock, **kwargs: Any) -> ProgressiveDetailLoader:
    return ProgressiveDetailLoader(source, MemoryCache(clock=clock), clock=clock, **kwargs)


class TestNextDelay:
    def test_exponential(self) -> None:
        assert [next_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]


class TestLoad:
    """Queued, rate-limited loading."""

    async def test_fetches_and_caches(self, clock: FakeClock) -> None:
        source = FakeSource()
        loader = make_loader(source, clock)
        result = await loader.load("a")
        assert result.value == {"name": "value-a"}
        assert not result.failed
        assert not result.from_cache
        assert loader.state("a") is FetchState.CACHED
        assert loader.cache.get("detail:a") == {"name": "value-a"}

        again = await loader.load("a")
        assert again.from_cache
        assert source.calls == ["a"]
        await loader.close()

    async def test_retries_then_falls_back(self, clock: FakeClock) -> None:
        """Three retries at 1s, 2s, 4s, then the fallback."""
        source = FakeSource({"a": -1})
        loader = make_loader(source, clock, max_retries=3)
        result = await loader.load("a")
        assert source.calls == ["a"] * 4
        assert result.failed
        assert result.value == {"name": "fallback"}
        assert loader.state("a") is FetchState.FAILED
        assert clock.sleeps == [1.0, 2.0, 4.0]
        assert loader.cache.get("detail:a") is None
        await loader.close()

    async def test_recovers_after_failures(self, clock: FakeClock) -> None:
        source = FakeSource({"a": 2})
        loader = make_loader(source, clock)
        result = await loader.load("a")
        assert len(source.calls) == 3
        assert not result.failed
        assert result.value == {"name": "value-a"}
        await loader.close()

    async def test_zero_retries(self, clock: FakeClock) -> None:
        source = FakeSource({"a": 1})
        loader = make_loader(source, clock, max_retries=0)
        result = await loader.load("a")
        assert result.failed
        assert source.calls == ["a"]
        await loader.close()

    async def test_dequeue_spacing(self, clock: FakeClock) -> None:
        source = FakeSource()
        loader = make_loader(source, clock, min_interval=1.0)
        results = await asyncio.gather(loader.load("a"), loader.load("b"), loader.load("c"))
        assert [r.item_id for r in results] == ["a", "b", "c"]
        assert source.calls == ["a", "b", "c"]
        assert clock.sleeps == [1.0, 1.0]
        await loader.close()

    async def test_duplicate_requests_share_fetch(self, clock: FakeClock) -> None:
        source = FakeSource()
        loader = make_loader(source, clock)
        first, second = await asyncio.gather(loader.load("a"), loader.load("a"))
        assert source.calls == ["a"]
        assert first == second
        await loader.close()

    async def test_refresh_skips_cache(self, clock: FakeClock) -> None:
        source = FakeSource()
        loader = make_loader(source, clock)
        await loader.load("a")
        result = await loader.refresh("a")
        assert source.calls == ["a", "a"]
        assert not result.from_cache
        await loader.close()

    async def test_refresh_during_fetch_fetches_again(self, clock: FakeClock) -> None:
        source = FakeSource()
        source.gate = asyncio.Event()
        loader = make_loader(source, clock)
        first = asyncio.ensure_future(loader.load("a"))
        for _ in range(3):
            await asyncio.sleep(0)
        assert loader.state("a") is FetchState.FETCHING

        refreshed = asyncio.ensure_future(loader.refresh("a"))
        await asyncio.sleep(0)
        assert source.calls == ["a"]

        source.gate.set()
        assert (await first).value == {"name": "value-a"}
        result = await refreshed
        assert source.calls == ["a", "a"]
        assert not result.from_cache
        assert loader.state("a") is FetchState.CACHED
        await loader.close()

    async def test_shared_key_keeps_each_item_id(self, clock: FakeClock) -> None:
        source = SharedKeySource()
        loader = make_loader(source, clock)
        results = await asyncio.gather(loader.load("a"), loader.load("b"))
        assert source.calls == ["a"]
        assert [r.item_id for r in results] == ["a", "b"]
        assert [r.value for r in results] == [{"name": "value-a"}] * 2
        await loader.close()

    async def test_shared_key_failure_uses_each_fallback(self, clock: FakeClock) -> None:
        source = SharedKeySource(failures={"a": -1})
        loader = make_loader(source, clock, max_retries=0)
        results = await asyncio.gather(loader.load("a"), loader.load("b"))
        assert [(r.item_id, r.value, r.failed) for r in results] == [
            ("a", {"name": "fallback-a"}, True),
            ("b", {"name": "fallback-b"}, True),
        ]
        await loader.close()

    async def test_stale_entry_refetched(self, clock: FakeClock) -> None:
        source = FakeSource()
        loader = make_loader(source, clock)
        loader.cache.set("detail:a", {"stale": True})
        result = await loader.load("a")
        assert source.calls == ["a"]
        assert result.value == {"name": "value-a"}
        await loader.close()

    async def test_corrupt_entry_refetched(self, clock: FakeClock) -> None:
        source = FakeSource()
        loader = make_loader(source, clock)
        loader.cache.set("detail:a", "garbage")
        assert loader.cached("a") is None
        assert loader.cache.get("detail:a") is None
        await loader.load("a")
        assert source.calls == ["a"]
        await loader.close()

    async def test_expired_entry_refetched(self, clock: FakeClock) -> None:
        source = FakeSource()
        loader = make_loader(source, clock, ttl=60)
        await loader.load("a")
        clock.advance(61)
        await loader.load("a")
        assert source.calls == ["a", "a"]
        await loader.close()

    async def test_unexpected_error_reaches_caller(self, clock: FakeClock) -> None:
        source = FakeSource()
        source.crash = RuntimeError("bug")
        loader = make_loader(source, clock)
        with pytest.raises(RuntimeError, match="bug"):
            await loader.load("a")

        source.crash = None
        result = await loader.load("b")
        assert result.value == {"name": "value-b"}
        await loader.close()

    async def test_close_cancels_waiters(self, clock: FakeClock) -> None:
        source = FakeSource()
        source.gate = asyncio.Event()
        loader = make_loader(source, clock)
        waiter = asyncio.ensure_future(loader.load("a"))
        for _ in range(3):
            await asyncio.sleep(0)
        assert loader.pending == 1
        await loader.close()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert loader.pending == 0


class TestEnrichBatches:
    """Parallel batches with a fixed delay between them."""

    async def test_batches_with_delay(self, clock: FakeClock) -> None:
        source = FakeSource()
        loader = make_loader(source, clock, batch_size=2, batch_delay=1.0)
        results = [r async for r in loader.enrich_batches(["a", "b", "c", "d", "e"])]
        assert [r.item_id for r in results] == ["a", "b", "c", "d", "e"]
        assert clock.sleeps == [1.0, 1.0]
        assert loader.cache.get("detail:e") == {"name": "value-e"}

    async def test_cache_hits_first(self, clock: FakeClock) -> None:
        source = FakeSource()
        loader = make_loader(source, clock)
        loader.cache.set("detail:b", {"name": "cached-b"})
        results = [r async for r in loader.enrich_batches(["a", "b"])]
        assert results[0].item_id == "b"
        assert results[0].from_cache
        assert source.calls == ["a"]

    async def test_failing_item_gives_fallback(self, clock: FakeClock) -> None:
        source = FakeSource({"bad": -1})
        loader = make_loader(source, clock, max_retries=3)
        results = [r async for r in loader.enrich_batches(["ok", "bad"])]
        by_id = {r.item_id: r for r in results}
        assert by_id["ok"].value == {"name": "value-ok"}
        assert by_id["bad"].failed
        assert by_id["bad"].value == {"name": "fallback"}
        assert source.calls.count("bad") == 4

    async def test_retry_succeeds(self, clock: FakeClock) -> None:
        source = FakeSource({"a": 1})
        loader = make_loader(source, clock)
        results = [r async for r in loader.enrich_batches(["a"])]
        assert len(results) == 1
        assert not results[0].failed

    async def test_empty(self, clock: FakeClock) -> None:
        loader = make_loader(FakeSource(), clock)
        assert [r async for r in loader.enrich_batches([])] == []


class TestSpeciesDetailSource:
    """Detail loading against a mocked backend."""

    def client(self, payload: Any) -> ObservationClient:
        session = Mock()
        session.get.return_value.json.return_value = payload
        return ObservationClient(BASE, session=session)

    async def test_cache_key_is_request_url(self, clock: FakeClock) -> None:
        source = SpeciesDetailSource(self.client({"checklist": {}, "species": []}))
        item = make_point(3, 0, 0, Source.KUPUNESIA)
        assert source.key_for(item) == f"{BASE}/grid-species/kpn_3"
        assert source.item_id(item) == "kupunesia:3"

    async def test_load_through_loader(self, clock: FakeClock) -> None:
        source = SpeciesDetailSource(
            self.client({"species": [{"nameLat": "Papilio"}], "grade": "research grade"})
        )
        loader = ProgressiveDetailLoader(source, MemoryCache(clock=clock), clock=clock)
        item = make_point(5, 0, 0, Source.FOBI)
        result = await loader.load(item)
        assert isinstance(result.value, ItemDetail)
        assert result.value.grade == "research grade"
        cached = loader.cache.get(source.key_for(item))
        assert cached["grade"] == "research grade"
        await loader.close()

    async def test_cached_fobi_without_grade_is_stale(self, clock: FakeClock) -> None:
        source = SpeciesDetailSource(self.client({"species": [], "grade": "casual"}))
        loader = ProgressiveDetailLoader(source, MemoryCache(clock=clock), clock=clock)
        item = make_point(5, 0, 0, Source.FOBI)
        loader.cache.set(source.key_for(item), {"species": []})
        result = await loader.load(item)
        assert not result.from_cache
        assert result.value.grade == "casual"
        await loader.close()

    def test_decode_rejects_garbage(self) -> None:
        source = SpeciesDetailSource(self.client({}))
        with pytest.raises(CacheCorrupt):
            source.decode("k", {"species": "nope"})

    def test_fallback_is_empty_detail(self) -> None:
        source = SpeciesDetailSource(self.client({}))
        assert source.fallback(make_point(1, 0, 0)) == ItemDetail()


class TestPlaceNameSource:
    async def test_fetch(self) -> None:
        source = PlaceNameSource()
        with patch(
            "observation_atlas.enrichment.sources.reverse_geocode", return_value="Ubud, Bali"
        ) as mock_geocode:
            assert await source.fetch(make_point(1, -8.5, 115.26)) == "Ubud, Bali"
        assert mock_geocode.call_args.args == (-8.5, 115.26)

    async def test_failure_falls_back_to_coordinates(self, clock: FakeClock) -> None:
        loader = ProgressiveDetailLoader(
            PlaceNameSource(), MemoryCache(clock=clock), clock=clock, max_retries=1
        )
        with patch(
            "observation_atlas.enrichment.sources.reverse_geocode",
            side_effect=GeocodeFailed(-8.5, 115.26, "offline"),
        ):
            result = await loader.load(make_point(1, -8.5, 115.26))
        assert result.failed
        assert result.value == "-8.5, 115.26"
        await loader.close()

    async def test_same_coordinates_share_one_lookup(self, clock: FakeClock) -> None:
        loader = ProgressiveDetailLoader(PlaceNameSource(), MemoryCache(clock=clock), clock=clock)
        with patch(
            "observation_atlas.enrichment.sources.reverse_geocode", return_value="Ubud, Bali"
        ) as mock_geocode:
            results = await asyncio.gather(
                loader.load(make_point("a", -8.5, 115.26)),
                loader.load(make_point("b", -8.5, 115.26, Source.KUPUNESIA)),
            )
        assert mock_geocode.call_count == 1
        assert [r.item_id for r in results] == ["fobi:a", "kupunesia:b"]
        assert {r.value for r in results} == {"Ubud, Bali"}
        await loader.close()

    def test_key_and_decode(self) -> None:
        source = PlaceNameSource()
        assert source.key_for(make_point(1, -8.5, 115.26)) == "-8.5,115.26"
        with pytest.raises(CacheCorrupt):
            source.decode("k", 12)
