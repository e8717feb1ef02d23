"""Observation platform data source (FOBI, Burungnesia, Kupunesia).

One backend fronts all three sources. Each source has its own paginated
list endpoint; markers, per-item detail and polygon queries are shared.

Public API:
  - client: ObservationClient, endpoint names
  - models: ObservationFilters, SourcePage
  - pages: fetch_source_page, parse_page, parse_observation
  - markers: fetch_markers, parse_markers, filter_by_source
  - details: detail_endpoint, fetch_detail, normalize_detail, is_stale_detail
  - polygon: fetch_grids_in_polygon, fetch_polygon_stats
"""

from observation_atlas.datasources.observations.client import (
    OBSERVATION_ENDPOINTS,
    ObservationClient,
)
from observation_atlas.datasources.observations.details import (
    detail_endpoint,
    fetch_detail,
    is_stale_detail,
    normalize_detail,
)
from observation_atlas.datasources.observations.markers import (
    fetch_markers,
    filter_by_source,
    parse_markers,
    points_from_json,
    points_to_json,
)
from observation_atlas.datasources.observations.models import ObservationFilters, SourcePage
from observation_atlas.datasources.observations.pages import (
    fetch_source_page,
    parse_observation,
    parse_page,
)
from observation_atlas.datasources.observations.polygon import (
    fetch_grids_in_polygon,
    fetch_polygon_stats,
)

__all__ = [
    "OBSERVATION_ENDPOINTS",
    "ObservationClient",
    "ObservationFilters",
    "SourcePage",
    "detail_endpoint",
    "fetch_detail",
    "fetch_grids_in_polygon",
    "fetch_markers",
    "fetch_polygon_stats",
    "fetch_source_page",
    "filter_by_source",
    "is_stale_detail",
    "normalize_detail",
    "parse_markers",
    "parse_observation",
    "parse_page",
    "points_from_json",
    "points_to_json",
]
