"""Exception hierarchy for observation-atlas.

Every error is contained at the component that raised it and turned into a
degraded result (empty source page, raw-data fallback, coordinates instead of
a place name, cache miss). Callers of :class:`~observation_atlas.engine.AtlasEngine`
never see these; direct callers of lower-level helpers may.
"""

from __future__ import annotations


class AtlasError(Exception):
    """Base exception for all observation-atlas errors."""


class SourceUnavailable(AtlasError):
    """One upstream observation source failed (network error, non-2xx, bad payload)."""

    def __init__(self, source: str, endpoint: str, reason: str = "") -> None:
        self.source = source
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"source {source!r} unavailable at {endpoint}: {reason}".rstrip(": "))


class EnrichmentFailed(AtlasError):
    """An item's detail fetch failed (a single attempt, or after exhausting retries)."""

    def __init__(self, item_id: str, endpoint: str = "", reason: str = "") -> None:
        self.item_id = item_id
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"enrichment failed for {item_id} ({endpoint}): {reason}")


class GeocodeFailed(AtlasError):
    """Reverse geocoding of a coordinate pair failed."""

    def __init__(self, latitude: float, longitude: float, reason: str = "") -> None:
        self.latitude = latitude
        self.longitude = longitude
        self.reason = reason
        super().__init__(f"reverse geocoding failed for ({latitude}, {longitude}): {reason}")


class CacheCorrupt(AtlasError):
    """A stored cache value could not be parsed."""

    def __init__(self, key: str, reason: str = "") -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"corrupt cache entry {key!r}: {reason}")


class ShapeInvalid(AtlasError):
    """A drawn shape is malformed and must not be sent upstream."""
