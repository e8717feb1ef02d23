"""Shared fixtures: a controllable clock and point factories."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from observation_atlas.schemas import Observation, Point, Source


class FakeClock:
    """Clock whose time only moves when told to (or when something sleeps)."""

    def __init__(self, start: datetime | None = None) -> None:
        self.start = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        self.elapsed = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.elapsed += max(0.0, seconds)
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_point(
    id: str | int, lat: float | None, lng: float | None, source: Source | str = Source.FOBI, **extra: Any
) -> Point:
    return Point(id=id, source=source, latitude=lat, longitude=lng, **extra)


def make_observation(
    id: str | int,
    source: Source | str = Source.FOBI,
    observed_at: str | None = None,
    **extra: Any,
) -> Observation:
    return Observation(
        id=id,
        source=source,
        latitude=extra.pop("latitude", -6.2),
        longitude=extra.pop("longitude", 106.8),
        observed_at=observed_at,
        **extra,
    )
