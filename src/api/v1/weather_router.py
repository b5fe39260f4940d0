from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from fmi.errors import FmiError
from fmi.models import Observation
from services.weather import WeatherDataUnavailable, WeatherResponse, weather_service

router = APIRouter(prefix="/weather", tags=["weather"])

WIND_CHILL_MAX_TEMP_C = 10.0
WIND_CHILL_MIN_WIND_KMH = 4.8


def validate_lat(lat: float = Query(..., ge=-90.0, le=90.0)) -> float:
    return lat


def validate_lon(lon: float = Query(..., ge=-180.0, le=180.0)) -> float:
    return lon


class StationModel(BaseModel):
    id: int
    name: str
    distance_km: float


class CurrentConditions(BaseModel):
    temperature: Optional[float] = None
    feels_like: Optional[float] = None
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
    extra: dict[str, float] = Field(default_factory=dict)
    observed_at: str


class WeatherPayload(BaseModel):
    station: StationModel
    current: CurrentConditions
    hourly_forecast: list[dict[str, Any]]
    daily_forecast: list[dict[str, Any]]
    forecast_state: str
    hourly_state: Optional[str] = None


def feels_like(temperature: Optional[float], wind_speed_ms: Optional[float]) -> Optional[float]:
    """Wind chill (Environment Canada formula) when cold and windy, else the air temperature."""
    if temperature is None:
        return None
    if wind_speed_ms is None:
        return temperature
    wind_kmh = wind_speed_ms * 3.6
    if temperature > WIND_CHILL_MAX_TEMP_C or wind_kmh < WIND_CHILL_MIN_WIND_KMH:
        return temperature
    factor = wind_kmh ** 0.16
    return 13.12 + 0.6215 * temperature - 11.37 * factor + 0.3965 * temperature * factor


def _current_payload(observation: Observation) -> CurrentConditions:
    payload = observation.to_payload()
    payload["feels_like"] = feels_like(observation.temperature, observation.wind_speed)
    payload.setdefault("extra", {})
    return CurrentConditions(**payload)


def build_payload(response: WeatherResponse) -> WeatherPayload:
    return WeatherPayload(
        station=StationModel(
            id=response.station.station_id,
            name=response.station.name,
            distance_km=round(response.distance_km, 3),
        ),
        current=_current_payload(response.observation),
        hourly_forecast=[entry.to_payload() for entry in response.hourly],
        daily_forecast=[forecast.to_payload() for forecast in response.daily],
        forecast_state=response.forecast_state.value,
        hourly_state=response.hourly_state.value if response.hourly_state is not None else None,
    )


@router.get("", response_model=WeatherPayload)
async def get_weather(lat: float = Depends(validate_lat), lon: float = Depends(validate_lon)):
    try:
        response = await weather_service.get_weather(lat, lon)
    except WeatherDataUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except FmiError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to load forecast: {exc}") from exc
    return build_payload(response)
