"""TTL caches for upstream payloads.

Two implementations share the :class:`Cache` interface:
  - MemoryCache: per-process dict, used by the engine for detail and place names
  - JsonFileCache: one JSON file per key under a directory, used by flows and
    the CLI so markers survive between runs

Every stored value is wrapped in a metadata envelope::

    {"meta": {"key": ..., "stored_at": ..., "ttl": ..., "valid_until": ...},
     "data": <payload>}

An entry is valid while ``now - stored_at < ttl``. Expired and unreadable
entries read as misses; writes replace entries wholesale.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path  # noqa: TC003
from typing import Any, Protocol

from observation_atlas.clock import Clock, system_clock
from observation_atlas.exceptions import CacheCorrupt

_logger = logging.getLogger(__name__)

DEFAULT_TTL = 24 * 3600.0


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    stored_at: datetime
    ttl: float

    @property
    def valid_until(self) -> datetime:
        return self.stored_at + timedelta(seconds=self.ttl)

    def is_valid(self, now: datetime) -> bool:
        return (now - self.stored_at).total_seconds() < self.ttl

    def to_envelope(self) -> dict[str, Any]:
        return {
            "meta": {
                "key": self.key,
                "stored_at": self.stored_at.isoformat(),
                "ttl": self.ttl,
                "valid_until": self.valid_until.isoformat(),
            },
            "data": self.payload,
        }

    @classmethod
    def from_envelope(cls, key: str, envelope: Any) -> CacheEntry:
        """Rebuild an entry from its stored envelope.

        Raises:
            CacheCorrupt: If the envelope is missing fields or has bad values.
        """
        if not isinstance(envelope, dict) or "meta" not in envelope or "data" not in envelope:
            raise CacheCorrupt(key, "missing meta/data envelope")
        meta = envelope["meta"]
        try:
            stored_at = datetime.fromisoformat(meta["stored_at"])
            ttl = float(meta["ttl"])
        except (KeyError, TypeError, ValueError) as e:
            raise CacheCorrupt(key, str(e)) from e
        return cls(key=key, payload=envelope["data"], stored_at=stored_at, ttl=ttl)


class Cache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, payload: Any, ttl: float | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...


class MemoryCache:
    """In-process TTL cache."""

    def __init__(self, *, ttl: float = DEFAULT_TTL, clock: Clock = system_clock) -> None:
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def entry(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key``, dropping it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_valid(self.clock.now()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        entry = self.entry(key)
        return entry.payload if entry is not None else None

    def set(self, key: str, payload: Any, ttl: float | None = None) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            payload=payload,
            stored_at=self.clock.now(),
            ttl=self.ttl if ttl is None else ttl,
        )

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class JsonFileCache:
    """TTL cache persisted as one JSON envelope per key."""

    def __init__(
        self,
        base_dir: Path,
        *,
        ttl: float = DEFAULT_TTL,
        clock: Clock = system_clock,
    ) -> None:
        self.base = base_dir
        self.ttl = ttl
        self.clock = clock

    def path_for(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()  # noqa: S324
        return self.base / f"{digest}.json"

    def _load(self, key: str) -> CacheEntry | None:
        full = self.path_for(key)
        if not full.exists():
            return None
        try:
            with full.open() as f:
                envelope = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CacheCorrupt(key, str(e)) from e
        return CacheEntry.from_envelope(key, envelope)

    def entry(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key``; corrupt files are deleted."""
        try:
            entry = self._load(key)
        except CacheCorrupt as e:
            _logger.warning("Dropping %s", e)
            self.delete(key)
            return None
        if entry is None or not entry.is_valid(self.clock.now()):
            return None
        return entry

    def get(self, key: str) -> Any | None:
        entry = self.entry(key)
        return entry.payload if entry is not None else None

    def set(self, key: str, payload: Any, ttl: float | None = None) -> None:
        entry = CacheEntry(
            key=key,
            payload=payload,
            stored_at=self.clock.now(),
            ttl=self.ttl if ttl is None else ttl,
        )
        full = self.path_for(key)
        full.parent.mkdir(parents=True, exist_ok=True)
        with full.open("w") as f:
            json.dump(entry.to_envelope(), f, indent=2, default=str)

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)

    def clear(self) -> None:
        if not self.base.exists():
            return
        for full in self.base.glob("*.json"):
            full.unlink(missing_ok=True)

    def is_fresh(self, key: str) -> bool:
        return self.entry(key) is not None
