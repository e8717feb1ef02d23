"""External data source integrations.

Each subdirectory is one data source with a consistent structure:

    datasources/{name}/
    ├── __init__.py       # Public API re-exports
    ├── client.py         # API URLs, constants, HTTP helpers
    ├── models.py         # Request/response models (optional)
    └── {feature}.py      # Fetch functions (one per endpoint/concept)

Fetch functions are blocking and use the shared session from
``services/http.py``. They raise the exceptions in ``exceptions.py``
(SourceUnavailable, EnrichmentFailed, GeocodeFailed); the async components
(coordinator, detail loader, polygon adapter) call them through
``asyncio.to_thread`` and turn those errors into degraded results.

Sources:
  - observations/  FOBI, Burungnesia and Kupunesia via the platform backend
  - geocoding/     Nominatim reverse geocoding for place names
"""
