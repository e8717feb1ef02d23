"""
Prefect flow for building tile layers from cached markers.

Buckets the cached markers at every resolution and writes one GeoJSON
FeatureCollection per resolution for the map renderer.

Run locally:
    python -m observation_atlas.flows.markers
    python -m observation_atlas.flows.tiles
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from prefect import flow, task

from observation_atlas.config import get_settings
from observation_atlas.flows.markers import load_markers
from observation_atlas.grid import Resolution, bucket
from observation_atlas.schemas import Point, Source

TILES_DIR = Path("data/tiles")


@task(name="load-markers")
def load_cached_markers() -> list[Point]:
    """Load markers written by the refresh-markers flow."""
    return load_markers()


@task(name="build-layer")
def build_layer(
    points: list[Point], resolution: Resolution, authoritative_source: Source | None = None
) -> dict[str, Any]:
    """Bucket points into a GeoJSON FeatureCollection."""
    tiles = bucket(points, resolution, authoritative_source=authoritative_source)
    return {
        "type": "FeatureCollection",
        "properties": {
            "resolution": resolution.name.lower(),
            "degrees": resolution.degrees,
            "points": sum(t.count for t in tiles),
        },
        "features": [t.to_feature() for t in tiles],
    }


@task(name="write-layer")
def write_layer(collection: dict[str, Any], resolution: Resolution, out_dir: Path) -> Path:
    """Write a layer as ``{resolution}.geojson``."""
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / f"{resolution.name.lower()}.geojson"
    with path.open("w") as f:
        json.dump(collection, f)
    return path


@flow(name="build-tiles", log_prints=True)
def build_tiles(out_dir: Path = TILES_DIR) -> dict[str, Any]:
    """
    Build tile layers for every resolution.

    This is the main Prefect flow that produces the renderer's map layers.
    """
    print("Loading markers...")
    points = load_cached_markers()
    if not points:
        print("No markers found. Run refresh-markers first.")
        return {"error": "no data"}

    authoritative = get_settings().authoritative_source
    layers: dict[str, int] = {}
    for resolution in Resolution:
        collection = build_layer(points, resolution, authoritative)
        path = write_layer(collection, resolution, out_dir)
        layers[resolution.name.lower()] = len(collection["features"])
        print(f"{resolution.name.lower()}: {len(collection['features'])} tiles -> {path}")

    return {"points": len(points), "layers": layers, "output": str(out_dir)}


if __name__ == "__main__":
    result = build_tiles()
    print(f"Flow complete: {result}")
