"""
Prefect flows for the tile pipeline.

Flows:
- markers: Fetch /markers and /fobi-markers into the 24h marker cache
- tiles: Bucket cached markers into GeoJSON layers, one per resolution

Usage (local):
    python -m observation_atlas.flows.markers
    python -m observation_atlas.flows.tiles

Usage (Prefect):
    prefect server start  # Optional, for dashboard
    prefect deployment run 'refresh-markers/default'
"""
