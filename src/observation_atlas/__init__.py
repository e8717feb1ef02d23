"""Observation Atlas - tile aggregation and progressive disclosure for observation maps.

Architecture::

    grid/          Zoom-adaptive tiling (resolution table, bucketing, 1-degree index)
    coordinator.py Multi-source pagination: concurrent fetch, dedup, global sort
    enrichment/    Rate-limited, retrying, cached per-item detail loading
    polygon.py     Drawn shapes -> boundary strings, grids and stats inside them
    engine.py      Core-facing facade used by the map/grid renderers
    datasources/   Upstream APIs (observation sources, reverse geocoding)
    store.py       TTL caches (in-memory and JSON-on-disk)
    flows/         Prefect orchestration (marker refresh, tile layer build)
    services/      Shared utilities (HTTP client with retry)

Data flow: markers -> grid (tiles) -> coordinator (merged pages)
-> enrichment (visible items) -> polygon (when a shape is drawn).
"""

__version__ = "0.1.0"

from observation_atlas.config import Settings
from observation_atlas.engine import AtlasEngine
from observation_atlas.schemas import Point, Source, Tile

__all__ = ["AtlasEngine", "Point", "Settings", "Source", "Tile", "__version__"]
