"""Queue entries and retry timing for the detail loader."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

MAX_RETRIES = 3


class FetchState(StrEnum):
    QUEUED = "queued"
    FETCHING = "fetching"
    RETRYING = "retrying"
    CACHED = "cached"
    FAILED = "failed"


IN_FLIGHT = frozenset({FetchState.QUEUED, FetchState.FETCHING, FetchState.RETRYING})


def next_delay(retry_count: int) -> float:
    """Backoff before retry number ``retry_count + 1``: 1s, 2s, 4s, ..."""
    return float(2**retry_count)


@dataclass
class FetchQueueItem:
    """One item waiting for (or being retried by) the loader."""

    item: Any
    key: str
    retry_count: int = 0
    attempts: int = 0
    state: FetchState = FetchState.QUEUED
    errors: list[str] = field(default_factory=list)
