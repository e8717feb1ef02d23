"""Raw marker arrays used for map tiling.

``/markers`` serves checklist-based sources (burungnesia, kupunesia) and
``/fobi-markers`` serves FOBI's own observations. Both return bare JSON
arrays of ``{id, latitude, longitude, source, created_at, ...}``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from observation_atlas.datasources.observations.client import (
    FOBI_MARKERS,
    MARKERS,
    ObservationClient,
)
from observation_atlas.datasources.observations.models import ObservationFilters
from observation_atlas.exceptions import SourceUnavailable
from observation_atlas.schemas import Point, Source, parse_sources

_logger = logging.getLogger(__name__)


def parse_marker(row: Any) -> Point | None:
    """Parse one marker row. Returns None if the row has no id or bad field types."""
    if not isinstance(row, dict) or row.get("id") in (None, ""):
        return None
    try:
        return Point(
            id=row["id"],
            source=row.get("source"),
            latitude=row.get("latitude"),
            longitude=row.get("longitude"),
            created_at=row.get("created_at"),
            observed_at=row.get("observed_at") or row.get("observation_date"),
            grade=row.get("grade"),
            checklist_id=row.get("checklist_id"),
        )
    except ValidationError as e:
        _logger.debug("Skipping malformed marker %r: %s", row.get("id"), e)
        return None


def parse_markers(rows: Any) -> list[Point]:
    if not isinstance(rows, list):
        return []
    return [p for p in (parse_marker(row) for row in rows) if p is not None]


def _fetch_endpoint(
    client: ObservationClient, endpoint: str, params: list[tuple[str, Any]]
) -> list[Point]:
    try:
        rows = client.get_json(endpoint, params, source=endpoint)
    except SourceUnavailable as e:
        _logger.warning("Marker fetch failed: %s", e)
        return []
    if not isinstance(rows, list):
        _logger.warning("Marker endpoint %s returned %s, expected a list", endpoint, type(rows).__name__)
        return []
    return parse_markers(rows)


def fetch_markers(
    client: ObservationClient,
    filters: ObservationFilters | None = None,
) -> list[Point]:
    """
    Fetch markers from both marker endpoints.

    Each endpoint degrades to an empty list on failure, so one broken
    endpoint never hides the other's markers. With ``filters.data_sources``
    set, only the endpoints serving those sources are called.

    Returns:
        Points with normalized sources, checklist markers first.
    """
    sources = parse_sources(filters.data_sources if filters else None)
    params = filters.to_params() if filters else []
    # grade[] and data_source[] only apply to FOBI markers
    common = [(k, v) for k, v in params if k not in ("grade[]", "data_source[]")]

    points: list[Point] = []
    if Source.BURUNGNESIA in sources or Source.KUPUNESIA in sources:
        points.extend(_fetch_endpoint(client, MARKERS, common))
    if Source.FOBI in sources:
        points.extend(_fetch_endpoint(client, FOBI_MARKERS, params))
    return filter_by_source(points, sources)


def filter_by_source(points: Iterable[Point], sources: Iterable[Source] | None) -> list[Point]:
    """Keep points from ``sources``; an empty selection keeps everything."""
    selected = set(parse_sources(list(sources) if sources is not None else None))
    return [p for p in points if p.source in selected]


def points_to_json(points: Iterable[Point]) -> list[dict[str, Any]]:
    return [p.model_dump(mode="json") for p in points]


def points_from_json(rows: Any) -> list[Point]:
    """Inverse of :func:`points_to_json`; unparseable rows are skipped."""
    return parse_markers(rows)
