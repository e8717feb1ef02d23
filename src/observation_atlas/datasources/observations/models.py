"""Request filters and page results for the observation endpoints."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from observation_atlas.schemas import Observation, Source


class ObservationFilters(BaseModel):
    """Query filters shared by every source's observation endpoint."""

    model_config = ConfigDict(frozen=True)

    search: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    date_type: str | None = None
    grades: tuple[str, ...] = ()
    taxonomy_rank: str | None = None
    taxonomy_value: str | None = None
    user_id: str | None = None
    polygon: str | None = None
    has_media: bool = False
    media_type: str | None = None
    data_sources: tuple[Source, ...] = Field(default=())

    def to_params(self) -> list[tuple[str, Any]]:
        """Encode as query parameters; list filters use the ``name[]`` form."""
        params: list[tuple[str, Any]] = []
        for name in (
            "search",
            "start_date",
            "end_date",
            "date_type",
            "taxonomy_rank",
            "taxonomy_value",
            "user_id",
            "polygon",
            "media_type",
        ):
            value = getattr(self, name)
            if value:
                params.append((name, value))
        params.extend(("grade[]", g) for g in self.grades)
        if self.has_media:
            params.append(("has_media", "1"))
        params.extend(("data_source[]", s.value) for s in self.data_sources)
        return params


@dataclass
class SourcePage:
    """One page of one source, already parsed."""

    source: Source
    items: list[Observation] = field(default_factory=list)
    has_more: bool = False
    total: int = 0
    current_page: int | None = None
    last_page: int | None = None
    failed: bool = False

    @classmethod
    def unavailable(cls, source: Source) -> SourcePage:
        return cls(source=source, failed=True)
