from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Paths
    store_db_path: str = Field(default="cyclesafe/data/cyclesafe_store.db", alias="STORE_DB_PATH")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # ──────────────────────────────────────────────────────────────
    # Reverse geocoding (backend lambda, mode=geocode)
    # No default endpoint: when unset, geocoding is disabled and the
    # tracker never reports an address.
    # ──────────────────────────────────────────────────────────────

    geocode_base_url: str | None = Field(default=None, alias="GEOCODE_BASE_URL")
    geocode_timeout_s: float = Field(default=8.0, alias="GEOCODE_TIMEOUT_S")
    geocode_cell_precision: int = Field(default=3, alias="GEOCODE_CELL_PRECISION")  # 0.001° ≈ 110 m

    # ──────────────────────────────────────────────────────────────
    # Location tracker
    # ──────────────────────────────────────────────────────────────

    location_refresh_s: float = Field(default=5.0, alias="LOCATION_REFRESH_S")
    position_timeout_s: float = Field(default=8.0, alias="POSITION_TIMEOUT_S")
    position_max_age_s: float = Field(default=4.0, alias="POSITION_MAX_AGE_S")

    # ──────────────────────────────────────────────────────────────
    # Backend clusters (list-alerts)
    # ──────────────────────────────────────────────────────────────

    list_alerts_url: str | None = Field(default=None, alias="LIST_ALERTS_URL")
    alerts_refresh_s: float = Field(default=60.0, alias="ALERTS_REFRESH_S")
    alerts_timeout_s: float = Field(default=15.0, alias="ALERTS_TIMEOUT_S")

    # ──────────────────────────────────────────────────────────────
    # VIC Emergency GeoJSON feeds
    # Not location-scoped on the wire: the whole state comes back and
    # distance filtering happens locally.
    # ──────────────────────────────────────────────────────────────

    vic_events_url: str = Field(
        default="https://emergency.vic.gov.au/public/events-geojson.json",
        alias="VIC_EVENTS_URL",
    )
    vic_impacts_url: str = Field(
        default="https://emergency.vic.gov.au/public/impact-areas-geojson.json",
        alias="VIC_IMPACTS_URL",
    )
    feeds_cache_seconds: int = Field(default=120, alias="FEEDS_CACHE_SECONDS")
    feeds_timeout_s: float = Field(default=15.0, alias="FEEDS_TIMEOUT_S")

    nearby_radius_km: float = Field(default=25.0, alias="NEARBY_RADIUS_KM")
    extended_radius_km: float = Field(default=100.0, alias="EXTENDED_RADIUS_KM")

    # ──────────────────────────────────────────────────────────────
    # Local weather advisories
    # ──────────────────────────────────────────────────────────────

    weather_high_ttl_min: int = Field(default=30, alias="WEATHER_HIGH_TTL_MIN")
    weather_medium_ttl_min: int = Field(default=20, alias="WEATHER_MEDIUM_TTL_MIN")


settings = Settings()
