from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Load the repository .env and accept env keys in any case
    _env_file = Path(__file__).resolve().parent.parent / ".env"
    model_config = SettingsConfigDict(env_file=str(_env_file), extra="ignore", case_sensitive=False)

    app_name: str = "wby weather"
    app_version: str = "0.1.0"
    debug: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 8080
    log_level: str = Field(default="INFO", description="Root log level applied at startup.")

    # FMI open data
    fmi_base_url: str = Field(default="https://opendata.fmi.fi/wfs", description="WFS endpoint for stored queries")
    fmi_timeseries_url: str = Field(
        default="https://data.fmi.fi",
        description="Base URL for the keyed timeseries service (UV forecast).",
    )
    fmi_api_key: str | None = Field(
        default=None,
        description="API key for the timeseries service. UV enrichment is skipped when unset.",
    )
    fmi_request_timeout: float = Field(default=30.0, ge=1.0, description="Timeout in seconds for upstream HTTP calls")
    fmi_user_agent: str = Field(
        default="wby-weather/0.1.0",
        description="User-Agent sent to the upstream weather provider.",
    )

    # Observation ingestion
    observation_bbox: str = Field(
        default="19,59,32,71",
        description="Bounding box (lon_min,lat_min,lon_max,lat_max) for the all-station observation query.",
    )
    observation_max_locations: int = Field(default=200, ge=1)
    observation_timestep_minutes: int = Field(default=10, ge=1)
    observation_window_minutes: int = Field(
        default=60,
        ge=10,
        description="How far back each observation fetch reaches.",
    )
    observation_fetch_enabled: bool = Field(default=True, description="Run the background observation fetcher.")
    observation_fetch_interval_seconds: float = Field(
        default=600.0,
        ge=1.0,
        description="Spacing between scheduled observation fetches.",
    )

    # Forecast serving
    forecast_days: int = Field(default=11, ge=1, le=15, description="Daily forecast horizon in days")
    hourly_forecast_hours: int = Field(default=12, ge=1, le=72, description="Hourly forecast horizon in hours")
    forecast_cache_ttl_seconds: float = Field(
        default=600.0,
        ge=0.0,
        description="In-memory cache duration for forecasts and UV data.",
    )
    forecast_freshness_minutes: float = Field(
        default=180.0,
        gt=0.0,
        description="Maximum age of persisted daily forecasts before an upstream refresh is attempted.",
    )
    hourly_freshness_minutes: float = Field(
        default=90.0,
        gt=0.0,
        description="Maximum age of persisted hourly forecasts before an upstream refresh is attempted.",
    )

    # Persistence
    weather_db: str = Field(
        default="data/weather.sqlite",
        description="SQLite database path for stations, observations and forecasts.",
    )
    hourly_retention_days: float = Field(
        default=3.0,
        gt=0.0,
        description="Hourly forecasts older than this are pruned on write.",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def normalize_cors(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            if s in ("", "*"):
                return ["*"]
            return [p.strip() for p in s.split(",")]
        return v

    @field_validator("fmi_api_key", mode="before")
    @classmethod
    def blank_api_key_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

settings = Settings()
