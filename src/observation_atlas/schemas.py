"""
Domain models for observation-atlas.

Pydantic models for data from the upstream observation sources and for the
structures handed to renderers. Upstream payloads are normalized into these
by ``datasources/``; nothing downstream reads raw API dicts.
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# =============================================================================
# Sources
# =============================================================================


class Source(StrEnum):
    """Upstream observation sources."""

    FOBI = "fobi"
    BURUNGNESIA = "burungnesia"
    KUPUNESIA = "kupunesia"


ALL_SOURCES: tuple[Source, ...] = (Source.FOBI, Source.BURUNGNESIA, Source.KUPUNESIA)

# Backend source labels -> canonical source
_SOURCE_ALIASES: dict[str, Source] = {
    "fobi": Source.FOBI,
    "taxa_fobi": Source.FOBI,
    "burungnesia": Source.BURUNGNESIA,
    "burungnesia_fobi": Source.BURUNGNESIA,
    "kupunesia": Source.KUPUNESIA,
    "kupunesia_fobi": Source.KUPUNESIA,
}


def normalize_source(value: Any) -> Source:
    """Map a backend source label to a :class:`Source`.

    Empty or unknown labels fall back to ``burungnesia``, the source whose
    marker rows historically carried no label.
    """
    if isinstance(value, Source):
        return value
    if not value:
        return Source.BURUNGNESIA
    label = str(value).strip().lower()
    if label in _SOURCE_ALIASES:
        return _SOURCE_ALIASES[label]
    for source in ALL_SOURCES:
        if source.value in label:
            return source
    return Source.BURUNGNESIA


def parse_sources(values: Any) -> list[Source]:
    """Parse a source filter; empty or missing means every source."""
    if not values:
        return list(ALL_SOURCES)
    if isinstance(values, str):
        values = [v for v in values.split(",") if v.strip()]
    sources: list[Source] = []
    for value in values:
        source = normalize_source(value)
        if source not in sources:
            sources.append(source)
    return sources


def _coerce_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


# =============================================================================
# Points and observations
# =============================================================================


class Point(BaseModel):
    """A single observation location as received from upstream.

    Coordinates are kept even when unusable; :attr:`is_valid` decides whether
    the point takes part in tiling.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    source: Source
    latitude: float | None = None
    longitude: float | None = None
    created_at: datetime | None = None
    observed_at: datetime | None = None
    grade: str | None = None
    checklist_id: str | None = None

    @field_validator("id", "checklist_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: Any) -> Source:
        return normalize_source(value)

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _parse_coordinate(cls, value: Any) -> float | None:
        return _coerce_float(value)

    @field_validator("created_at", "observed_at", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> datetime | None:
        return _coerce_datetime(value)

    @property
    def dedup_key(self) -> str:
        """``source:id`` - at most one merged entry per key."""
        return f"{self.source.value}:{self.id}"

    @property
    def is_valid(self) -> bool:
        """True if both coordinates are finite and the latitude is within +-90.

        Longitudes outside +-180 stay valid; consumers wrap them into range.
        """
        lat, lng = self.latitude, self.longitude
        if lat is None or lng is None:
            return False
        if not (math.isfinite(lat) and math.isfinite(lng)):
            return False
        return -90 <= lat <= 90


class Observation(Point):
    """A list/grid item: a point plus the display fields the sources return."""

    title: str = "Unidentified"
    scientific_name: str | None = None
    observer: str | None = None
    location_name: str | None = None
    images: tuple[str, ...] = ()

    @property
    def display_location(self) -> str:
        if self.location_name:
            return self.location_name
        return format_coordinates(self.latitude, self.longitude)


def format_coordinates(latitude: float | None, longitude: float | None) -> str:
    """Fallback label used when no place name is available."""
    if latitude is None or longitude is None:
        return "-"
    return f"{latitude}, {longitude}"


# =============================================================================
# Tiles and viewports
# =============================================================================

LatLng = tuple[float, float]


class Bounds(BaseModel):
    """Viewport rectangle in degrees."""

    model_config = ConfigDict(frozen=True)

    south: float = Field(..., ge=-90, le=90)
    west: float = Field(..., ge=-180, le=180)
    north: float = Field(..., ge=-90, le=90)
    east: float = Field(..., ge=-180, le=180)

    @classmethod
    def from_pairs(cls, pairs: tuple[LatLng, LatLng] | list[list[float]]) -> Bounds:
        """Build from ``[[south, west], [north, east]]``."""
        (south, west), (north, east) = pairs
        return cls(south=south, west=west, north=north, east=east)

    def intersects(self, other: tuple[LatLng, LatLng]) -> bool:
        (south, west), (north, east) = other
        return not (
            north < self.south or south > self.north or east < self.west or west > self.east
        )


class Tile(BaseModel):
    """A grid cell aggregating the observation points inside it."""

    model_config = ConfigDict(frozen=True)

    bucket_key: str
    bounds: tuple[LatLng, LatLng]
    count: int
    member_ids: tuple[str, ...] = ()
    source: Source | None = None

    @property
    def center(self) -> LatLng:
        (south, west), (north, east) = self.bounds
        return ((south + north) / 2, (west + east) / 2)

    def to_feature(self) -> dict[str, Any]:
        """GeoJSON Polygon feature for map renderers."""
        (south, west), (north, east) = self.bounds
        ring = [[west, south], [east, south], [east, north], [west, north], [west, south]]
        return {
            "type": "Feature",
            "id": self.bucket_key,
            "geometry": {"type": "Polygon", "coordinates": [ring]},
            "properties": {
                "count": self.count,
                "source": self.source.value if self.source else None,
                "center": list(self.center),
            },
        }


# =============================================================================
# Drawn shapes
# =============================================================================


class CircleShape(BaseModel):
    """A drawn circle; ``center`` is ``(lng, lat)`` and ``radius`` is in meters."""

    model_config = ConfigDict(frozen=True)

    type: Literal["Circle"] = "Circle"
    center: tuple[float, float]
    radius: float

    def to_payload(self) -> dict[str, Any]:
        return {"type": "Circle", "center": list(self.center), "radius": self.radius}


class PolygonShape(BaseModel):
    """A drawn polygon; ``ring`` is a list of ``(lng, lat)`` vertices."""

    model_config = ConfigDict(frozen=True)

    type: Literal["Polygon"] = "Polygon"
    ring: tuple[tuple[float, float], ...]

    def to_payload(self) -> dict[str, Any]:
        return {"type": "Polygon", "coordinates": [[list(p) for p in self.ring]]}


Shape = CircleShape | PolygonShape


def shape_from_geojson(data: dict[str, Any]) -> Shape:
    """Parse the ``{type, coordinates}`` / ``{type, center, radius}`` shape format.

    Raises:
        ValueError: If the type is unknown or required fields are missing.
    """
    kind = data.get("type")
    if kind == "Circle":
        return CircleShape(center=tuple(data["center"]), radius=data["radius"])
    if kind == "Polygon":
        coordinates = data.get("coordinates") or [[]]
        return PolygonShape(ring=tuple(tuple(p) for p in coordinates[0]))
    msg = f"Unsupported shape type: {kind!r}"
    raise ValueError(msg)


# =============================================================================
# Aggregates
# =============================================================================


class Stats(BaseModel):
    """Aggregate counts for a filter or a drawn region."""

    fobi: int = 0
    burungnesia: int = 0
    kupunesia: int = 0
    observations: int = 0
    species: int = 0
    contributors: int = 0

    @classmethod
    def from_api(cls, data: dict[str, Any] | None) -> Stats:
        """Parse an upstream stats object; missing fields count as zero.

        Accepts both the Indonesian field names used by the backend
        (``observasi``, ``spesies``, ``kontributor``) and English ones.
        """
        data = data or {}

        def _int(*keys: str) -> int:
            for key in keys:
                value = data.get(key)
                if value is not None:
                    try:
                        return int(value)
                    except (TypeError, ValueError):
                        return 0
            return 0

        return cls(
            fobi=_int("fobi"),
            burungnesia=_int("burungnesia"),
            kupunesia=_int("kupunesia"),
            observations=_int("observations", "observasi"),
            species=_int("species", "spesies", "taksa"),
            contributors=_int("contributors", "kontributor"),
        )


def combine_stats(stats: list[Stats]) -> Stats:
    """Merge stats from several queries.

    Counts add up; species and contributors take the maximum since the same
    taxon or person can appear in more than one query.
    """
    combined = Stats()
    for s in stats:
        combined = Stats(
            fobi=combined.fobi + s.fobi,
            burungnesia=combined.burungnesia + s.burungnesia,
            kupunesia=combined.kupunesia + s.kupunesia,
            observations=combined.observations + s.observations,
            species=max(combined.species, s.species),
            contributors=max(combined.contributors, s.contributors),
        )
    return combined


# =============================================================================
# Enrichment
# =============================================================================


class ItemDetail(BaseModel):
    """Heavier per-item data loaded only for visible items."""

    checklist: dict[str, Any] = Field(default_factory=dict)
    species: list[dict[str, Any]] = Field(default_factory=list)
    media: list[dict[str, Any]] = Field(default_factory=list)
    sounds: list[dict[str, Any]] = Field(default_factory=list)
    grade: str | None = None
    location_name: str | None = None
