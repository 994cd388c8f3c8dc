from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Paths
    cache_db_path: str = Field(default="nearby/data/discovery_cache.db", alias="CACHE_DB_PATH")

    # ──────────────────────────────────────────────────────────────
    # Discovery: query normalization
    # ──────────────────────────────────────────────────────────────

    discovery_min_radius_m: int = Field(default=100, alias="DISCOVERY_MIN_RADIUS_M")
    discovery_max_radius_m: int = Field(default=100_000, alias="DISCOVERY_MAX_RADIUS_M")
    discovery_default_radius_m: int = Field(default=2_000, alias="DISCOVERY_DEFAULT_RADIUS_M")
    discovery_default_limit: int = Field(default=50, alias="DISCOVERY_DEFAULT_LIMIT")

    # ──────────────────────────────────────────────────────────────
    # Discovery: tile cache
    # ──────────────────────────────────────────────────────────────

    # "sqlite" (local cache DB) or "supa" (place_tiles.discovery_cache)
    discovery_cache_backend: str = Field(default="sqlite", alias="DISCOVERY_CACHE_BACKEND")
    discovery_cache_ttl_s: int = Field(default=5 * 60, alias="DISCOVERY_CACHE_TTL_S")
    discovery_max_cache_entries: int = Field(default=30, alias="DISCOVERY_MAX_CACHE_ENTRIES")
    discovery_max_cache_items: int = Field(default=200, alias="DISCOVERY_MAX_CACHE_ITEMS")
    discovery_tile_step_deg: float = Field(default=0.02, alias="DISCOVERY_TILE_STEP_DEG")
    # place_tiles column holding the grid tile key (supa backend only)
    discovery_tile_key_column: str = Field(default="geohash6", alias="DISCOVERY_TILE_KEY_COLUMN")
    discovery_cache_write_workers: int = Field(default=2, alias="DISCOVERY_CACHE_WRITE_WORKERS")

    # ──────────────────────────────────────────────────────────────
    # Discovery: sources
    # ──────────────────────────────────────────────────────────────

    discovery_max_schema_retries: int = Field(default=5, alias="DISCOVERY_MAX_SCHEMA_RETRIES")
    discovery_venue_schema_retries: int = Field(default=4, alias="DISCOVERY_VENUE_SCHEMA_RETRIES")
    discovery_session_lookahead_days: int = Field(default=45, alias="DISCOVERY_SESSION_LOOKAHEAD_DAYS")
    discovery_session_row_cap: int = Field(default=5000, alias="DISCOVERY_SESSION_ROW_CAP")
    venue_search_max_limit: int = Field(default=50, alias="VENUE_SEARCH_MAX_LIMIT")
    venue_search_default_limit: int = Field(default=25, alias="VENUE_SEARCH_DEFAULT_LIMIT")

    # Places (Overpass)
    overpass_url: str = Field(default="https://overpass-api.de/api/interpreter", alias="OVERPASS_URL")
    overpass_timeout_s: int = Field(default=25, alias="OVERPASS_TIMEOUT_S")
    overpass_retries: int = Field(default=2, alias="OVERPASS_RETRIES")
    overpass_retry_base_s: float = Field(default=0.75, alias="OVERPASS_RETRY_BASE_S")
    overpass_min_radius_m: int = Field(default=250, alias="OVERPASS_MIN_RADIUS_M")
    overpass_max_radius_m: int = Field(default=5_000, alias="OVERPASS_MAX_RADIUS_M")
    overpass_min_elements: int = Field(default=60, alias="OVERPASS_MIN_ELEMENTS")
    overpass_max_elements: int = Field(default=180, alias="OVERPASS_MAX_ELEMENTS")

    # Supabase
    supa_url: str | None = Field(default=None, alias="SUPA_URL")
    supa_service_role_key: str | None = Field(default=None, alias="SUPA_SERVICE_ROLE_KEY")
    supa_timeout_s: float = Field(default=20.0, alias="SUPA_TIMEOUT_S")


settings = Settings()
