"""
Prefect flow for refreshing the cached marker set.

Fetches ``/markers`` and ``/fobi-markers``, normalizes sources and caches the
combined points for 24 hours. Skips the fetch while the cache is fresh.

Run locally:
    python -m observation_atlas.flows.markers

Run with Prefect dashboard:
    prefect server start &
    python -m observation_atlas.flows.markers
"""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Any

from prefect import flow, task

from observation_atlas.config import get_settings
from observation_atlas.datasources.observations import (
    ObservationClient,
    fetch_markers,
    points_from_json,
    points_to_json,
)
from observation_atlas.schemas import Point
from observation_atlas.store import JsonFileCache

settings = get_settings()

# Marker cache shared with the tiles flow and the CLI
store = JsonFileCache(settings.cache_dir, ttl=settings.cache_ttl_seconds)

MARKERS_KEY = "markers:all"


@task(name="fetch-markers", retries=2, retry_delay_seconds=5)
def fetch_all_markers(base_url: str) -> list[dict[str, Any]]:
    """Fetch markers from both endpoints (each degrades to empty on failure)."""
    client = ObservationClient(base_url)
    return points_to_json(fetch_markers(client))


@task(name="save-markers")
def save_markers(rows: list[dict[str, Any]]) -> Path:
    """Cache markers with the configured TTL."""
    store.set(MARKERS_KEY, rows)
    return store.path_for(MARKERS_KEY)


def load_markers() -> list[Point]:
    """Cached markers as points; empty if never fetched or expired."""
    return points_from_json(store.get(MARKERS_KEY))


@flow(name="refresh-markers", log_prints=True)
def refresh_markers(base_url: str | None = None, force: bool = False) -> dict[str, Any]:
    """
    Refresh the marker cache.

    Args:
        base_url: Backend base URL (default: ``settings.api_base_url``).
        force: Fetch even if the cache is still fresh.
    """
    if not force and store.is_fresh(MARKERS_KEY):
        print("Markers are fresh, skipping fetch.")
        rows = store.get(MARKERS_KEY) or []
    else:
        print("Fetching markers...")
        rows = fetch_all_markers(base_url or settings.api_base_url)
        path = save_markers(rows)
        print(f"Saved {len(rows)} markers to {path}")

    by_source = Counter(row.get("source") for row in rows)
    return {"markers": len(rows), "by_source": dict(by_source)}


if __name__ == "__main__":
    result = refresh_markers()
    print(f"Flow complete: {result}")
