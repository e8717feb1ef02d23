"""Zoom-adaptive tiling of observation points.

Public API:
  - resolution: Resolution, resolution_for, resolution_from_name
  - bucketer: bucket, tiles_in_bounds, normalize_longitude
  - index: SpatialTileIndex, build_index, query_viewport
"""

from observation_atlas.grid.bucketer import bucket, normalize_longitude, tiles_in_bounds
from observation_atlas.grid.index import SpatialTileIndex, build_index, query_viewport
from observation_atlas.grid.resolution import (
    Resolution,
    clamp_zoom,
    resolution_for,
    resolution_from_name,
)

__all__ = [
    "Resolution",
    "SpatialTileIndex",
    "bucket",
    "build_index",
    "clamp_zoom",
    "normalize_longitude",
    "query_viewport",
    "resolution_for",
    "resolution_from_name",
    "tiles_in_bounds",
]
