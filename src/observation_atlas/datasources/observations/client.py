"""
Observation platform API client.

Thin HTTP layer over the platform backend that fronts all three observation
sources. Handles URL building, JSON decoding and turning transport errors
into :class:`~observation_atlas.exceptions.SourceUnavailable`.

Endpoints (relative to ``api_base_url``):
  - GET  general-observations / bird-observations / butterfly-observations
  - GET  markers, fobi-markers
  - GET  fobi-species/{id}/{type}, grid-species/{id}
  - POST grids-in-polygon, polygon-stats
"""

from __future__ import annotations

from typing import Any

import requests

from observation_atlas.exceptions import SourceUnavailable
from observation_atlas.schemas import Source
from observation_atlas.services.http import session as default_session

# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
OBSERVATION_ENDPOINTS: dict[Source, str] = {
    Source.FOBI: "general-observations",
    Source.BURUNGNESIA: "bird-observations",
    Source.KUPUNESIA: "butterfly-observations",
}

MARKERS = "markers"
FOBI_MARKERS = "fobi-markers"
GRIDS_IN_POLYGON = "grids-in-polygon"
POLYGON_STATS = "polygon-stats"

DEFAULT_PER_PAGE = 30

Params = dict[str, Any] | list[tuple[str, Any]]


class ObservationClient:
    """Blocking client for the observation backend.

    Async callers run methods through ``asyncio.to_thread``.
    """

    def __init__(self, base_url: str, *, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or default_session

    def url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def build_url(self, endpoint: str, params: Params | None = None) -> str:
        """Full request URL with encoded query string; used as a cache key."""
        prepared = requests.Request("GET", self.url(endpoint), params=params or {}).prepare()
        return str(prepared.url)

    def get_json(self, endpoint: str, params: Params | None = None, *, source: str = "") -> Any:
        """GET ``endpoint`` and decode the JSON body.

        Raises:
            SourceUnavailable: On connection errors, non-2xx status or a body
                that is not JSON.
        """
        url = self.url(endpoint)
        try:
            resp = self.session.get(url, params=params or {})
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            raise SourceUnavailable(source or endpoint, url, str(e)) from e

    def post_json(self, endpoint: str, body: dict[str, Any], *, source: str = "") -> Any:
        """POST a JSON body to ``endpoint`` and decode the JSON response."""
        url = self.url(endpoint)
        try:
            resp = self.session.post(url, json=body)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            raise SourceUnavailable(source or endpoint, url, str(e)) from e
