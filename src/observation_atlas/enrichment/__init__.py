"""Progressive enrichment of visible items.

Public API:
  - loader: ProgressiveDetailLoader, LoadResult
  - queue: FetchState, FetchQueueItem, next_delay, MAX_RETRIES
  - sources: SpeciesDetailSource, PlaceNameSource
"""

from observation_atlas.enrichment.loader import LoadResult, ProgressiveDetailLoader
from observation_atlas.enrichment.queue import MAX_RETRIES, FetchQueueItem, FetchState, next_delay
from observation_atlas.enrichment.sources import DetailSource, PlaceNameSource, SpeciesDetailSource

__all__ = [
    "MAX_RETRIES",
    "DetailSource",
    "FetchQueueItem",
    "FetchState",
    "LoadResult",
    "PlaceNameSource",
    "ProgressiveDetailLoader",
    "SpeciesDetailSource",
    "next_delay",
]
