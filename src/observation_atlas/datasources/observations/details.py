"""Per-item detail (checklist, species list, media) for visible items.

Routing:
  - FOBI-hosted items   -> ``fobi-species/{fobi_id}/{source_type}``
  - burungnesia items   -> ``grid-species/brn_{id}``
  - kupunesia items     -> ``grid-species/kpn_{id}``

``fobi_id`` is the raw id with a ``fobi_t_``/``fobi_b_``/``fobi_k_`` prefix
unless it already starts with ``fobi_``. The raw id is the item's
``checklist_id`` when it has one.
"""

from __future__ import annotations

from typing import Any

from observation_atlas.datasources.observations.client import ObservationClient
from observation_atlas.exceptions import EnrichmentFailed, SourceUnavailable
from observation_atlas.schemas import ItemDetail, Point, Source

# FOBI detail source types and their id prefixes
FOBI_SOURCE_TYPES: dict[str, str] = {
    "taxa_fobi": "fobi_t_",
    "burungnesia_fobi": "fobi_b_",
    "kupunesia_fobi": "fobi_k_",
}

GRID_SPECIES_PREFIXES: dict[Source, str] = {
    Source.BURUNGNESIA: "brn_",
    Source.KUPUNESIA: "kpn_",
}


def _fobi_source_type(item: Point) -> str:
    for source_type, prefix in FOBI_SOURCE_TYPES.items():
        if item.id.startswith(prefix):
            return source_type
    if item.source == Source.BURUNGNESIA:
        return "burungnesia_fobi"
    if item.source == Source.KUPUNESIA:
        return "kupunesia_fobi"
    return "taxa_fobi"


def is_fobi_hosted(item: Point) -> bool:
    return item.source == Source.FOBI or item.id.startswith("fobi_")


def detail_endpoint(item: Point) -> str:
    """Relative detail endpoint for ``item``."""
    raw_id = item.checklist_id or item.id
    if is_fobi_hosted(item):
        source_type = _fobi_source_type(item)
        fobi_id = raw_id if raw_id.startswith("fobi_") else f"{FOBI_SOURCE_TYPES[source_type]}{raw_id}"
        return f"fobi-species/{fobi_id}/{source_type}"
    return f"grid-species/{GRID_SPECIES_PREFIXES[item.source]}{raw_id}"


def _species_entry(row: Any) -> dict[str, Any]:
    row = row if isinstance(row, dict) else {}
    return {
        "nameLat": row.get("scientific_name") or row.get("nameLat"),
        "nameId": row.get("common_name") or row.get("nameId"),
        "count": row.get("count") or 1,
        "id": row.get("id"),
    }


def _fallback_checklist(item: Point) -> dict[str, Any]:
    return {
        "id": item.id,
        "date": item.observed_at.isoformat() if item.observed_at else None,
        "latitude": item.latitude,
        "longitude": item.longitude,
    }


def normalize_detail(payload: Any, item: Point) -> ItemDetail:
    """Normalize the three response shapes the detail endpoints return.

    FOBI-hosted items answer with ``{species: [...]}``, a bare list of
    species, or ``{data: [...]}``; checklist sources answer with
    ``{checklist, species}``. Media and sounds are taken from the top level
    when present.
    """
    body = payload if isinstance(payload, dict) else {}
    species: list[dict[str, Any]]
    if is_fobi_hosted(item):
        if isinstance(body.get("species"), list):
            species = [_species_entry(s) for s in body["species"]]
            checklist = body.get("checklist") or {}
        elif isinstance(payload, list):
            species = [_species_entry(s) for s in payload]
            checklist = _fallback_checklist(item)
        elif isinstance(body.get("data"), list):
            species = [_species_entry(s) for s in body["data"]]
            checklist = body.get("checklist") or _fallback_checklist(item)
        else:
            species = []
            checklist = _fallback_checklist(item)
    else:
        checklist = body.get("checklist") or {}
        species = body["species"] if isinstance(body.get("species"), list) else []

    return ItemDetail(
        checklist=checklist,
        species=species,
        media=body["media"] if isinstance(body.get("media"), list) else [],
        sounds=body["sounds"] if isinstance(body.get("sounds"), list) else [],
        grade=body.get("grade") or None,
    )


def fetch_detail(client: ObservationClient, item: Point) -> ItemDetail:
    """
    Fetch and normalize one item's detail.

    Raises:
        EnrichmentFailed: Transport failure or an ``error`` field in the body.
    """
    endpoint = detail_endpoint(item)
    try:
        payload = client.get_json(endpoint, source=item.source.value)
    except SourceUnavailable as e:
        raise EnrichmentFailed(item.id, endpoint, e.reason) from e
    if isinstance(payload, dict) and payload.get("error"):
        raise EnrichmentFailed(item.id, endpoint, str(payload["error"]))
    return normalize_detail(payload, item)


def is_stale_detail(item: Point, payload: Any) -> bool:
    """Cached FOBI detail written before grades were stored is stale."""
    if not isinstance(payload, dict):
        return True
    return is_fobi_hosted(item) and "grade" not in payload
