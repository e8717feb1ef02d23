"""Paginated observation fetching and row parsing."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from observation_atlas.datasources.observations.client import (
    DEFAULT_PER_PAGE,
    OBSERVATION_ENDPOINTS,
    ObservationClient,
)
from observation_atlas.datasources.observations.models import ObservationFilters, SourcePage
from observation_atlas.exceptions import SourceUnavailable
from observation_atlas.schemas import Observation, Source, normalize_source

_logger = logging.getLogger(__name__)

UNIDENTIFIED = "Unidentified"

# Ranks checked (finest first) when a general observation carries no ``rank``
TAXONOMY_RANKS = (
    "subspecies",
    "species",
    "subgenus",
    "genus",
    "tribe",
    "subfamily",
    "family",
    "superfamily",
    "order",
    "class",
    "phylum",
    "kingdom",
)

# =============================================================================
# Parsing
# =============================================================================


def _title(row: dict[str, Any]) -> str:
    rank = row.get("rank")
    if rank:
        return row.get(f"cname_{rank}") or row.get(rank) or UNIDENTIFIED
    for name in ("nameId", "common_name", "nameLat", "scientific_name"):
        if row.get(name):
            return str(row[name])
    for rank in TAXONOMY_RANKS:
        if row.get(f"cname_{rank}"):
            return str(row[f"cname_{rank}"])
        if row.get(rank):
            return str(row[rank])
    return UNIDENTIFIED


def _images(row: dict[str, Any]) -> tuple[str, ...]:
    images = row.get("images")
    if isinstance(images, list):
        urls = []
        for image in images:
            url = image.get("url") if isinstance(image, dict) else image
            if url:
                urls.append(str(url))
        return tuple(urls)
    if row.get("image"):
        return (str(row["image"]),)
    return ()


def parse_observation(row: Any, source: Source) -> Observation | None:
    """Parse one list row. Returns None if the row has no id or bad field types."""
    if not isinstance(row, dict) or row.get("id") in (None, ""):
        return None
    try:
        return _build_observation(row, source)
    except ValidationError as e:
        _logger.debug("Skipping malformed %s row %r: %s", source, row.get("id"), e)
        return None


def _build_observation(row: dict[str, Any], source: Source) -> Observation:
    return Observation(
        id=row["id"],
        source=normalize_source(row.get("source") or source),
        latitude=row.get("latitude"),
        longitude=row.get("longitude"),
        created_at=row.get("created_at"),
        observed_at=row.get("observation_date") or row.get("tgl_pengamatan"),
        grade=row.get("grade"),
        checklist_id=row.get("checklist_id"),
        title=_title(row),
        scientific_name=row.get("nameLat") or row.get("scientific_name") or row.get("species"),
        observer=row.get("observer_name") or row.get("observer"),
        location_name=row.get("location_name"),
        images=_images(row),
    )


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_page(payload: Any, source: Source) -> SourcePage:
    """Parse any of the accepted page shapes.

    ``{data, meta: {current_page, last_page, total}}``
        ``has_more`` is ``current_page < last_page``.
    ``{success, data}`` or a bare list
        single page; ``has_more`` is False.

    Raises:
        SourceUnavailable: If the payload is neither a dict nor a list, the
            backend reports ``success: false``, or ``data`` is not a list.
    """
    endpoint = OBSERVATION_ENDPOINTS[source]
    if isinstance(payload, list):
        rows: Any = payload
        meta: dict[str, Any] = {}
    elif isinstance(payload, dict):
        if payload.get("success") is False:
            raise SourceUnavailable(source, endpoint, str(payload.get("message", "success=false")))
        rows = payload.get("data") or []
        meta = payload.get("meta") or {}
    else:
        raise SourceUnavailable(source, endpoint, f"unexpected payload {type(payload).__name__}")
    if not isinstance(rows, list):
        raise SourceUnavailable(source, endpoint, "data is not a list")

    items = [obs for obs in (parse_observation(row, source) for row in rows) if obs is not None]
    current_page = _as_int(meta.get("current_page"))
    last_page = _as_int(meta.get("last_page"))
    has_more = current_page is not None and last_page is not None and current_page < last_page
    return SourcePage(
        source=source,
        items=items,
        has_more=has_more,
        total=_as_int(meta.get("total")) or 0,
        current_page=current_page,
        last_page=last_page,
    )


# =============================================================================
# API Fetching
# =============================================================================


def fetch_source_page(
    client: ObservationClient,
    source: Source,
    page: int,
    *,
    per_page: int = DEFAULT_PER_PAGE,
    filters: ObservationFilters | None = None,
    exclude: Source | None = None,
) -> SourcePage:
    """
    Fetch and parse one page of one source.

    Args:
        client: Backend client.
        source: Which source's endpoint to hit.
        page: 1-based page number.
        per_page: Page size requested from the backend.
        filters: Shared query filters.
        exclude: Primary source whose records the backend should leave out
            (``exclude_<source>=1``). Rows still labelled with it are dropped.

    Raises:
        SourceUnavailable: Transport failure or malformed payload.
    """
    params: list[tuple[str, Any]] = [("page", page), ("per_page", per_page)]
    if filters is not None:
        params.extend(filters.to_params())
    if exclude is not None:
        params.append((f"exclude_{exclude.value}", "1"))

    payload = client.get_json(OBSERVATION_ENDPOINTS[source], params, source=source.value)
    result = parse_page(payload, source)
    if exclude is not None:
        before = len(result.items)
        result.items = [obs for obs in result.items if obs.source != exclude]
        if len(result.items) != before:
            _logger.debug(
                "Dropped %d %s rows from %s page %d", before - len(result.items), exclude, source, page
            )
    return result
