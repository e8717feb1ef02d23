"""What the detail loader loads: species/media detail and place names.

A detail source tells the loader how to key, fetch, encode and fall back for
one kind of item. Fetches run the blocking datasource calls in a worker
thread.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import requests
from pydantic import ValidationError

from observation_atlas.datasources.geocoding import NOMINATIM_REVERSE, cache_key, reverse_geocode
from observation_atlas.datasources.observations import (
    ObservationClient,
    detail_endpoint,
    fetch_detail,
    is_stale_detail,
)
from observation_atlas.exceptions import AtlasError, CacheCorrupt
from observation_atlas.schemas import ItemDetail, Point, format_coordinates

#: Errors that count as a failed attempt (and are retried)
FETCH_ERRORS: tuple[type[Exception], ...] = (AtlasError, requests.RequestException, ValueError)


class DetailSource(Protocol):
    name: str

    def key_for(self, item: Any) -> str: ...

    def item_id(self, item: Any) -> str: ...

    async def fetch(self, item: Any) -> Any: ...

    def encode(self, value: Any) -> Any: ...

    def decode(self, key: str, payload: Any) -> Any: ...

    def is_stale(self, item: Any, payload: Any) -> bool: ...

    def fallback(self, item: Any) -> Any: ...


class SpeciesDetailSource:
    """Checklist, species list and media for one observation."""

    name = "species"

    def __init__(self, client: ObservationClient) -> None:
        self.client = client

    def key_for(self, item: Point) -> str:
        return self.client.build_url(detail_endpoint(item))

    def item_id(self, item: Point) -> str:
        return item.dedup_key

    async def fetch(self, item: Point) -> ItemDetail:
        return await asyncio.to_thread(fetch_detail, self.client, item)

    def encode(self, value: ItemDetail) -> dict[str, Any]:
        return value.model_dump(mode="json")

    def decode(self, key: str, payload: Any) -> ItemDetail:
        try:
            return ItemDetail.model_validate(payload)
        except ValidationError as e:
            raise CacheCorrupt(key, str(e)) from e

    def is_stale(self, item: Point, payload: Any) -> bool:
        return is_stale_detail(item, payload)

    def fallback(self, item: Point) -> ItemDetail:
        return ItemDetail()


class PlaceNameSource:
    """Human-readable place name for a point's coordinates."""

    name = "place"

    def __init__(self, url: str = NOMINATIM_REVERSE, session: requests.Session | None = None) -> None:
        self.url = url
        self.session = session

    def key_for(self, item: Point) -> str:
        return cache_key(item.latitude, item.longitude)  # type: ignore[arg-type]

    def item_id(self, item: Point) -> str:
        return item.dedup_key

    async def fetch(self, item: Point) -> str:
        return await asyncio.to_thread(
            reverse_geocode,
            item.latitude,  # type: ignore[arg-type]
            item.longitude,  # type: ignore[arg-type]
            url=self.url,
            session=self.session,
        )

    def encode(self, value: str) -> str:
        return value

    def decode(self, key: str, payload: Any) -> str:
        if not isinstance(payload, str):
            raise CacheCorrupt(key, f"expected a string, got {type(payload).__name__}")
        return payload

    def is_stale(self, item: Point, payload: Any) -> bool:
        return False

    def fallback(self, item: Point) -> str:
        return format_coordinates(item.latitude, item.longitude)
