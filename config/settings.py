"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # iRacing data API configuration
    iracing_base_url: str = "https://members-ng.iracing.com"
    iracing_auth_token: Optional[str] = None

    # Upstream request behaviour
    upstream_timeout_seconds: float = 30.0
    upstream_max_concurrency: int = 10
    upstream_retry_attempts: int = 3

    # Rate limiting (upstream requests per rolling minute)
    requests_per_minute: int = 60

    # Cache TTLs per namespace (seconds)
    cache_ttl_driver_seconds: int = 300        # 5 minutes
    cache_ttl_race_seconds: int = 1800         # 30 minutes
    cache_ttl_laps_seconds: int = 3600         # 1 hour
    cache_ttl_lookup_seconds: int = 86400      # 24 hours
    cache_negative_ttl_seconds: int = 60       # known-absent entities

    # Optional LRU bound applied to every namespace (None = unbounded)
    cache_max_entries: Optional[int] = None
    cache_stale_serve_enabled: bool = True
    coalesce_timeout_seconds: Optional[float] = None  # None: wait for settlement

    # Progressive race enrichment
    enrichment_max_workers: int = 4
    enrichment_run_timeout_seconds: float = 120.0

    prewarm_lookups_on_startup: bool = True
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
