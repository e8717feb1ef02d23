"""Upstream polygon queries: grids and aggregate stats inside a drawn shape.

Both endpoints take ``{"shape": <shape>, "data_source": [...]}``:
  - ``grids-in-polygon`` answers ``{"status": "success", "gridsInPolygon": [...]}``
  - ``polygon-stats`` answers ``{"success": true, "stats": {...}}``
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from observation_atlas.datasources.observations.client import (
    GRIDS_IN_POLYGON,
    POLYGON_STATS,
    ObservationClient,
)
from observation_atlas.exceptions import SourceUnavailable
from observation_atlas.schemas import Source, Stats, Tile, normalize_source


def _body(shape_payload: dict[str, Any], sources: Iterable[Source]) -> dict[str, Any]:
    return {"shape": shape_payload, "data_source": [s.value for s in sources]}


def parse_grid(row: Any, size: float) -> Tile | None:
    """Parse one upstream grid cell.

    Cells carry ``id`` and either ``bounds`` (``[[s, w], [n, e]]``) or a
    ``center`` (``[lng, lat]``) from which a ``size``-degree cell is rebuilt.
    """
    if not isinstance(row, dict) or row.get("id") in (None, ""):
        return None
    try:
        if row.get("bounds"):
            (south, west), (north, east) = row["bounds"]
        elif row.get("center"):
            lng, lat = row["center"]
            half = size / 2
            south, west, north, east = lat - half, lng - half, lat + half, lng + half
        else:
            return None
        bounds = ((float(south), float(west)), (float(north), float(east)))
        count = int(row.get("count") or row.get("total") or 0)
    except (TypeError, ValueError):
        return None
    source = row.get("source")
    return Tile(
        bucket_key=str(row["id"]),
        bounds=bounds,
        count=count,
        source=normalize_source(source) if source else None,
    )


def fetch_grids_in_polygon(
    client: ObservationClient,
    shape_payload: dict[str, Any],
    sources: Iterable[Source],
    *,
    size: float,
) -> list[Tile]:
    """
    Ask the backend which grid cells fall inside the shape.

    Raises:
        SourceUnavailable: Transport failure or a non-success status.
    """
    data = client.post_json(GRIDS_IN_POLYGON, _body(shape_payload, sources))
    if not isinstance(data, dict) or data.get("status") != "success":
        message = data.get("message", "") if isinstance(data, dict) else "unexpected payload"
        raise SourceUnavailable(GRIDS_IN_POLYGON, client.url(GRIDS_IN_POLYGON), str(message))
    rows = data.get("gridsInPolygon") or []
    return [tile for tile in (parse_grid(row, size) for row in rows) if tile is not None]


def fetch_polygon_stats(
    client: ObservationClient,
    shape_payload: dict[str, Any],
    sources: Iterable[Source],
) -> Stats:
    """
    Aggregate counts inside the shape.

    Raises:
        SourceUnavailable: Transport failure or ``success`` not true.
    """
    data = client.post_json(POLYGON_STATS, _body(shape_payload, sources))
    if not isinstance(data, dict) or not data.get("success"):
        raise SourceUnavailable(POLYGON_STATS, client.url(POLYGON_STATS), "success=false")
    return Stats.from_api(data.get("stats"))
