"""Bucket observation points into fixed-size grid tiles.

A tile's key is ``floor(lat / r)_floor(lng / r)`` and its bounds are the
cell's south-west corner (key times ``r``) plus ``r`` in both directions,
clipped to the valid lat/lng range. Every valid point lands in exactly one
tile, so tile counts always add up to the number of valid input points.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field

from observation_atlas.grid.resolution import Resolution
from observation_atlas.schemas import Bounds, Point, Source, Tile


def normalize_longitude(lng: float) -> float:
    """Wrap a longitude into ``[-180, 180)``."""
    return ((lng + 180) % 360) - 180


def bucket_key(lat: float, lng: float, size: float) -> str:
    return f"{math.floor(lat / size)}_{math.floor(lng / size)}"


def _bounds_valid(south: float, west: float, north: float, east: float) -> bool:
    if not all(math.isfinite(v) for v in (south, west, north, east)):
        return False
    return -90 <= south <= north <= 90 and -180 <= west <= east <= 180


@dataclass
class _Cell:
    lat_index: int
    lng_index: int
    source: Source
    member_ids: list[str] = field(default_factory=list)


def bucket(
    points: Iterable[Point],
    resolution: Resolution | float,
    *,
    authoritative_source: Source | None = Source.FOBI,
) -> list[Tile]:
    """Aggregate ``points`` into tiles of edge ``resolution`` degrees.

    Args:
        points: Observation points. Invalid ones (missing or NaN coordinates, or a
            latitude past the poles) are skipped. Longitudes are wrapped.
        resolution: A :class:`Resolution` or a raw size in degrees. A size
            that is not a finite positive number yields no tiles.
        authoritative_source: Once any member of a tile comes from this
            source, the tile is labelled with it. Otherwise the tile keeps the
            source of its first member. ``None`` disables the override.

    Returns:
        Tiles in first-seen order, one per occupied cell.
    """
    size = resolution.degrees if isinstance(resolution, Resolution) else resolution
    try:
        size = float(size)
    except (TypeError, ValueError):
        return []
    if not math.isfinite(size) or size <= 0:
        return []

    cells: dict[str, _Cell] = {}
    for point in points:
        if not point.is_valid:
            continue
        lat = float(point.latitude)  # type: ignore[arg-type]
        lng = normalize_longitude(float(point.longitude))  # type: ignore[arg-type]
        key = bucket_key(lat, lng, size)

        cell = cells.get(key)
        if cell is None:
            cell = _Cell(
                lat_index=math.floor(lat / size),
                lng_index=math.floor(lng / size),
                source=point.source,
            )
            cells[key] = cell
        cell.member_ids.append(point.id)
        if authoritative_source is not None and point.source == authoritative_source:
            cell.source = authoritative_source

    tiles: list[Tile] = []
    for key, cell in cells.items():
        # Cells on the poles and the antimeridian overhang the valid range
        south = max(-90.0, cell.lat_index * size)
        west = max(-180.0, cell.lng_index * size)
        north = min(90.0, cell.lat_index * size + size)
        east = min(180.0, cell.lng_index * size + size)
        if not _bounds_valid(south, west, north, east):
            continue
        tiles.append(
            Tile(
                bucket_key=key,
                bounds=((south, west), (north, east)),
                count=len(cell.member_ids),
                member_ids=tuple(cell.member_ids),
                source=cell.source,
            )
        )
    return tiles


def tiles_in_bounds(tiles: Iterable[Tile], bounds: Bounds | None) -> list[Tile]:
    """Keep the tiles whose rectangle intersects ``bounds``; ``None`` keeps all."""
    if bounds is None:
        return list(tiles)
    return [tile for tile in tiles if bounds.intersects(tile.bounds)]
