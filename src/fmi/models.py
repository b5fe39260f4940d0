from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from typing import Any, NamedTuple, Optional


def isoformat_utc(timestamp: datetime) -> str:
    """Serialize timestamps in UTC with second precision and a trailing Z."""
    iso = timestamp.astimezone(timezone.utc).isoformat(timespec="seconds")
    if iso.endswith("+00:00"):
        return iso[:-6] + "Z"
    return iso


class RawSample(NamedTuple):
    """One decoded time/value pair for a single parameter at a station or grid point."""

    entity_key: str
    parameter: str
    timestamp: datetime
    value: Optional[float]


@dataclass(slots=True)
class Station:
    station_id: int
    name: str
    latitude: float
    longitude: float
    wmo_code: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.station_id,
            "name": self.name,
            "lat": self.latitude,
            "lon": self.longitude,
            "wmo_code": self.wmo_code,
        }


@dataclass(slots=True)
class Observation:
    station_id: int
    observed_at: datetime
    temperature: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_gust: Optional[float] = None
    wind_direction: Optional[float] = None
    humidity: Optional[float] = None
    dew_point: Optional[float] = None
    pressure: Optional[float] = None
    precipitation_1h: Optional[float] = None
    precipitation_intensity: Optional[float] = None
    snow_depth: Optional[float] = None
    visibility: Optional[float] = None
    total_cloud_cover: Optional[float] = None
    weather_code: Optional[float] = None
    extra: dict[str, float] = field(default_factory=dict)

    def has_any_value(self) -> bool:
        if self.extra:
            return True
        return any(getattr(self, name) is not None for name in OBSERVATION_VALUE_FIELDS)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {name: getattr(self, name) for name in OBSERVATION_VALUE_FIELDS}
        payload["observed_at"] = isoformat_utc(self.observed_at)
        if self.extra:
            payload["extra"] = dict(self.extra)
        return payload


@dataclass(slots=True)
class ObservationResult:
    stations: list[Station] = field(default_factory=list)
    observations: list[Observation] = field(default_factory=list)


@dataclass(slots=True)
class DailyForecast:
    grid_lat: float
    grid_lon: float
    forecast_date: date
    fetched_at: datetime
    temp_high: Optional[float] = None
    temp_low: Optional[float] = None
    temp_avg: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None
    humidity_avg: Optional[float] = None
    precipitation_mm: Optional[float] = None
    precipitation_1h_sum: Optional[float] = None
    symbol: Optional[str] = None
    dew_point_avg: Optional[float] = None
    fog_intensity_avg: Optional[float] = None
    frost_probability_avg: Optional[float] = None
    severe_frost_probability_avg: Optional[float] = None
    geop_height_avg: Optional[float] = None
    pressure_avg: Optional[float] = None
    high_cloud_cover_avg: Optional[float] = None
    low_cloud_cover_avg: Optional[float] = None
    medium_cloud_cover_avg: Optional[float] = None
    middle_and_low_cloud_cover_avg: Optional[float] = None
    total_cloud_cover_avg: Optional[float] = None
    hourly_maximum_gust_max: Optional[float] = None
    hourly_maximum_wind_speed_max: Optional[float] = None
    pop_avg: Optional[float] = None
    probability_thunderstorm_avg: Optional[float] = None
    potential_precipitation_form_mode: Optional[float] = None
    potential_precipitation_type_mode: Optional[float] = None
    precipitation_form_mode: Optional[float] = None
    precipitation_type_mode: Optional[float] = None
    radiation_global_avg: Optional[float] = None
    radiation_lw_avg: Optional[float] = None
    weather_number_mode: Optional[float] = None
    weather_symbol3_mode: Optional[float] = None
    wind_ums_avg: Optional[float] = None
    wind_vms_avg: Optional[float] = None
    wind_vector_ms_avg: Optional[float] = None
    uv_index_avg: Optional[float] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"date": self.forecast_date.isoformat()}
        for name in DAILY_VALUE_FIELDS:
            payload[name] = getattr(self, name)
        return payload


@dataclass(slots=True)
class HourlyForecast:
    forecast_time: datetime
    temperature: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None
    humidity: Optional[float] = None
    precipitation_1h: Optional[float] = None
    symbol: Optional[str] = None
    uv_cumulated: Optional[float] = None
    fetched_at: Optional[datetime] = None

    def has_any_value(self) -> bool:
        return any(getattr(self, name) is not None for name in HOURLY_VALUE_FIELDS)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"time": isoformat_utc(self.forecast_time)}
        for name in HOURLY_VALUE_FIELDS:
            payload[name] = getattr(self, name)
        return payload


@dataclass(slots=True)
class UVDataPoint:
    time: datetime
    uv_cumulated: float


OBSERVATION_VALUE_FIELDS: tuple[str, ...] = tuple(
    f.name for f in fields(Observation) if f.name not in {"station_id", "observed_at", "extra"}
)
DAILY_VALUE_FIELDS: tuple[str, ...] = tuple(
    f.name for f in fields(DailyForecast) if f.name not in {"grid_lat", "grid_lon", "forecast_date", "fetched_at"}
)
HOURLY_VALUE_FIELDS: tuple[str, ...] = tuple(
    f.name for f in fields(HourlyForecast) if f.name not in {"forecast_time", "fetched_at"}
)
