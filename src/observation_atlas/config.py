"""Application settings, read from ``ATLAS_*`` environment variables or ``.env``."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from observation_atlas.schemas import Source, normalize_source


class Settings(BaseSettings):
    """Runtime configuration for the atlas engine and its upstream clients."""

    model_config = SettingsConfigDict(env_prefix="ATLAS_", env_file=".env", extra="ignore")

    app_name: str = "observation-atlas"
    app_env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Upstream endpoints
    api_base_url: str = "http://localhost:8000/api"
    geocode_url: str = "https://nominatim.openstreetmap.org/reverse"

    # Caching
    cache_dir: Path = Path("data/cache")
    cache_ttl_hours: float = Field(default=24.0, gt=0)

    # Pagination
    page_size: int = Field(default=30, gt=0)
    primary_source: str | None = "fobi"

    # Detail loading
    max_retries: int = Field(default=3, ge=0)
    dequeue_interval: float = Field(default=1.0, ge=0)
    batch_size: int = Field(default=2, gt=0)
    batch_delay: float = Field(default=1.0, ge=0)

    # Request coalescing for pan/zoom/filter changes
    debounce_seconds: float = Field(default=0.3, ge=0)

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_hours * 3600

    @property
    def authoritative_source(self) -> Source | None:
        """Normalized ``primary_source``; None when it is unset or empty."""
        return normalize_source(self.primary_source) if self.primary_source else None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
