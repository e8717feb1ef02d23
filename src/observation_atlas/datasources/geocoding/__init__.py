"""Reverse geocoding (OpenStreetMap Nominatim).

Public API:
  - client: reverse_geocode, place_name, cache_key, NOMINATIM_REVERSE
"""

from observation_atlas.datasources.geocoding.client import (
    NOMINATIM_REVERSE,
    cache_key,
    place_name,
    reverse_geocode,
)

__all__ = [
    "NOMINATIM_REVERSE",
    "cache_key",
    "place_name",
    "reverse_geocode",
]
