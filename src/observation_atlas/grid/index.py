"""Coarse spatial index for viewport culling.

Points are filed into fixed 1-degree cells keyed ``(floor(lng), floor(lat))``
regardless of zoom. A viewport query walks every cell the rectangle touches
(inclusive of the ceiling cells) and returns their members, so the result is
a superset of the points strictly inside the viewport. The caller re-buckets
that subset at the current resolution.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Iterator

from observation_atlas.grid.bucketer import normalize_longitude
from observation_atlas.schemas import Bounds, Point

CELL_DEGREES = 1

CellKey = tuple[int, int]


class SpatialTileIndex:
    """Mapping of 1-degree cell -> points inside it."""

    def __init__(self) -> None:
        self._cells: dict[CellKey, list[Point]] = defaultdict(list)
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[Point]:
        for members in self._cells.values():
            yield from members

    @property
    def cell_count(self) -> int:
        return len(self._cells)

    def add(self, point: Point) -> bool:
        """File ``point``; returns False (and skips it) if its coordinates are invalid."""
        if not point.is_valid:
            return False
        lng = normalize_longitude(float(point.longitude))  # type: ignore[arg-type]
        key = (math.floor(lng), math.floor(float(point.latitude)))  # type: ignore[arg-type]
        self._cells[key].append(point)
        self._size += 1
        return True

    def cell(self, lng: float, lat: float) -> list[Point]:
        return list(self._cells.get((math.floor(lng), math.floor(lat)), []))

    def query(self, bounds: Bounds) -> list[Point]:
        """Return the members of every cell overlapping ``bounds``."""
        found: list[Point] = []
        for x in range(math.floor(bounds.west), math.ceil(bounds.east) + 1):
            for y in range(math.floor(bounds.south), math.ceil(bounds.north) + 1):
                members = self._cells.get((x, y))
                if members:
                    found.extend(members)
        return found


def build_index(points: Iterable[Point]) -> SpatialTileIndex:
    index = SpatialTileIndex()
    for point in points:
        index.add(point)
    return index


def query_viewport(index: SpatialTileIndex, bounds: Bounds) -> list[Point]:
    """Points in the cells covering ``bounds`` (superset of the exact answer)."""
    return index.query(bounds)
