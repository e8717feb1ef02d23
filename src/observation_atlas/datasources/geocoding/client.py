"""
Nominatim reverse-geocoding client.

API docs: https://nominatim.org/release-docs/latest/api/Reverse/
Usage policy: at most 1 request/second and an identifying User-Agent. The
rate limit is enforced by the detail loader's queue spacing, not here.
"""

from __future__ import annotations

from typing import Any

import requests

from observation_atlas.exceptions import GeocodeFailed
from observation_atlas.schemas import format_coordinates
from observation_atlas.services.http import session as default_session

NOMINATIM_REVERSE = "https://nominatim.openstreetmap.org/reverse"

# Locality fields, most specific first; only the first present one is used
LOCALITY_FIELDS = ("village", "suburb", "town", "city")


def cache_key(latitude: float, longitude: float) -> str:
    return f"{latitude},{longitude}"


def place_name(address: dict[str, Any] | None) -> str:
    """Build ``"<locality>, <state>"`` from a Nominatim ``address`` block."""
    if not address:
        return ""
    parts: list[str] = []
    for name in LOCALITY_FIELDS:
        if address.get(name):
            parts.append(str(address[name]))
            break
    if address.get("state"):
        parts.append(str(address["state"]))
    return ", ".join(parts)


def reverse_geocode(
    latitude: float,
    longitude: float,
    *,
    url: str = NOMINATIM_REVERSE,
    session: requests.Session | None = None,
) -> str:
    """
    Resolve a coordinate pair to a short place name.

    Returns:
        The place name, or the formatted coordinates when Nominatim knows no
        locality or state for the point.

    Raises:
        GeocodeFailed: On transport errors, non-2xx status or a non-JSON body.
    """
    http = session or default_session
    params = {"lat": latitude, "lon": longitude, "format": "json"}
    try:
        resp = http.get(url, params=params)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise GeocodeFailed(latitude, longitude, str(e)) from e
    if not isinstance(data, dict):
        raise GeocodeFailed(latitude, longitude, "unexpected payload")
    if data.get("error"):
        raise GeocodeFailed(latitude, longitude, str(data["error"]))
    return place_name(data.get("address")) or format_coordinates(latitude, longitude)
