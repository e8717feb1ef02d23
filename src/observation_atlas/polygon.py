"""
Spatial queries restricted to a user-drawn shape.

Shapes are either polygons (``(lng, lat)`` rings) or circles (``(lng, lat)``
center plus radius in meters). The backend only understands polygons in its
query-string filter, so circles are approximated by a 32-point ring using
111,320 m per degree with the longitude offset scaled by ``1 / cos(lat)``.

Grids and stats inside a shape come from the backend when a client is
configured. When it is not, or the backend fails, grids are computed from
the locally loaded points (shapely for polygons, haversine distance for
circles) and bucketed like the map tiles. Stats are fetched at most once per
(shape, source filter) pair.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterable, Sequence

from shapely.geometry import Point as ShapelyPoint
from shapely.geometry import Polygon
from shapely.prepared import prep

from observation_atlas.datasources.observations import (
    ObservationClient,
    fetch_grids_in_polygon,
    fetch_polygon_stats,
)
from observation_atlas.exceptions import ShapeInvalid, SourceUnavailable
from observation_atlas.grid import Resolution, bucket, normalize_longitude
from observation_atlas.schemas import (
    CircleShape,
    Point,
    PolygonShape,
    Shape,
    Source,
    Stats,
    Tile,
    parse_sources,
)

_logger = logging.getLogger(__name__)

METERS_PER_DEGREE = 111320
CIRCLE_SEGMENTS = 32
EARTH_RADIUS_M = 6371008.8

# =============================================================================
# Geometry
# =============================================================================


def _in_range(lng: float, lat: float) -> bool:
    return (
        math.isfinite(lng) and math.isfinite(lat) and -180 <= lng <= 180 and -90 <= lat <= 90
    )


def validate_shape(shape: Shape) -> None:
    """Reject shapes that must never be sent upstream.

    Raises:
        ShapeInvalid: Polygon with fewer than 3 distinct valid vertices, or
            a circle with a bad center or a non-positive radius.
    """
    if isinstance(shape, CircleShape):
        lng, lat = shape.center
        if not _in_range(lng, lat):
            msg = f"circle center out of range: {shape.center}"
            raise ShapeInvalid(msg)
        if not math.isfinite(shape.radius) or shape.radius <= 0:
            msg = f"circle radius must be a positive number, got {shape.radius}"
            raise ShapeInvalid(msg)
        return

    for lng, lat in shape.ring:
        if not _in_range(lng, lat):
            msg = f"polygon vertex out of range: ({lng}, {lat})"
            raise ShapeInvalid(msg)
    if len(set(shape.ring)) < 3:
        msg = f"polygon needs at least 3 distinct vertices, got {len(set(shape.ring))}"
        raise ShapeInvalid(msg)


def circle_ring(shape: CircleShape, segments: int = CIRCLE_SEGMENTS) -> list[tuple[float, float]]:
    """Closed ``segments``-gon approximating the circle."""
    lng0, lat0 = shape.center
    offset = shape.radius / METERS_PER_DEGREE
    ring = []
    for i in range(segments):
        angle = i / segments * 2 * math.pi
        lng = lng0 + offset * math.cos(angle) / math.cos(math.radians(lat0))
        lat = lat0 + offset * math.sin(angle)
        ring.append((lng, lat))
    ring.append(ring[0])
    return ring


def closed_ring(shape: Shape) -> list[tuple[float, float]]:
    if isinstance(shape, CircleShape):
        return circle_ring(shape)
    ring = list(shape.ring)
    if ring and ring[0] != ring[-1]:
        ring.append(ring[0])
    return ring


def to_boundary_string(shape: Shape) -> str:
    """Encode as ``"lng,lat|lng,lat|..."`` with the ring closed.

    Raises:
        ShapeInvalid: If the shape fails :func:`validate_shape`.
    """
    validate_shape(shape)
    return "|".join(f"{lng},{lat}" for lng, lat in closed_ring(shape))


def haversine_m(lng1: float, lat1: float, lng2: float, lat2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def points_in_shape(shape: Shape, points: Iterable[Point]) -> list[Point]:
    """Valid points inside the shape; polygon boundaries count as inside."""
    valid = [p for p in points if p.is_valid]
    if isinstance(shape, CircleShape):
        lng0, lat0 = shape.center
        return [
            p
            for p in valid
            if haversine_m(lng0, lat0, p.longitude, p.latitude) <= shape.radius  # type: ignore[arg-type]
        ]
    region = prep(Polygon(shape.ring))
    return [
        p
        for p in valid
        if region.covers(ShapelyPoint(normalize_longitude(p.longitude), p.latitude))  # type: ignore[arg-type]
    ]


def local_stats(points: Sequence[Point]) -> Stats:
    """Per-source counts from points alone; species and contributors are unknown."""
    counts = {s: 0 for s in Source}
    for p in points:
        counts[p.source] += 1
    return Stats(
        fobi=counts[Source.FOBI],
        burungnesia=counts[Source.BURUNGNESIA],
        kupunesia=counts[Source.KUPUNESIA],
        observations=len(points),
    )


# =============================================================================
# Adapter
# =============================================================================


class PolygonQueryAdapter:
    """Grids and stats inside a drawn shape.

    Args:
        client: Backend client; ``None`` evaluates everything locally.
        authoritative_source: Passed to the bucketer for local grids.
    """

    def __init__(
        self,
        client: ObservationClient | None = None,
        *,
        authoritative_source: Source | None = Source.FOBI,
    ) -> None:
        self.client = client
        self.authoritative_source = authoritative_source
        self._stats_key: tuple[Shape, tuple[Source, ...]] | None = None
        self._stats: Stats | None = None
        self._stats_lock = asyncio.Lock()

    @property
    def stats_loaded(self) -> bool:
        return self._stats is not None

    def clear(self) -> None:
        self._stats_key = None
        self._stats = None

    @staticmethod
    def _sources(source_filter: Iterable[Source | str] | None) -> tuple[Source, ...]:
        return tuple(sorted(parse_sources(list(source_filter) if source_filter else None)))

    async def grids_in_polygon(
        self,
        shape: Shape,
        source_filter: Iterable[Source | str] | None = None,
        *,
        points: Iterable[Point] = (),
        resolution: Resolution = Resolution.LARGE,
    ) -> list[Tile]:
        """Tiles intersecting the shape.

        Raises:
            ShapeInvalid: If the shape is malformed.
        """
        validate_shape(shape)
        sources = self._sources(source_filter)
        if self.client is not None:
            try:
                return await asyncio.to_thread(
                    fetch_grids_in_polygon,
                    self.client,
                    shape.to_payload(),
                    sources,
                    size=resolution.degrees,
                )
            except SourceUnavailable as e:
                _logger.warning("grids-in-polygon failed, evaluating locally: %s", e)

        inside = points_in_shape(shape, (p for p in points if p.source in sources))
        return bucket(inside, resolution, authoritative_source=self.authoritative_source)

    async def stats_in_polygon(
        self,
        shape: Shape,
        source_filter: Iterable[Source | str] | None = None,
        *,
        points: Iterable[Point] = (),
    ) -> Stats:
        """Aggregate stats inside the shape, fetched once per shape and filter.

        Raises:
            ShapeInvalid: If the shape is malformed.
        """
        validate_shape(shape)
        sources = self._sources(source_filter)
        key = (shape, sources)
        async with self._stats_lock:
            if key == self._stats_key and self._stats is not None:
                return self._stats
            if key != self._stats_key:
                self._stats_key = key
                self._stats = None

            if self.client is not None:
                try:
                    stats = await asyncio.to_thread(
                        fetch_polygon_stats, self.client, shape.to_payload(), sources
                    )
                except SourceUnavailable as e:
                    # Not marked loaded, so the next call asks again
                    _logger.warning("polygon-stats failed, using local counts: %s", e)
                    inside = points_in_shape(shape, (p for p in points if p.source in sources))
                    return local_stats(inside)
            else:
                inside = points_in_shape(shape, (p for p in points if p.source in sources))
                stats = local_stats(inside)

            self._stats = stats
            return stats
