from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from config import settings
from fmi.client import FmiClient, fmi_client
from fmi.errors import FmiError
from fmi.models import DailyForecast, HourlyForecast, Observation, Station, UVDataPoint
from fmi.parser import parse_forecast, parse_hourly_forecast
from services.forecast_cache import FreshnessCache
from services.weather_store import WeatherStore, weather_store

logger = logging.getLogger("wby.server.weather")

GRID_PRECISION = 2


class WeatherDataUnavailable(RuntimeError):
    """No station or no observation is available for the requested location."""


class ResolutionState(str, Enum):
    CACHE_HIT = "cache_hit"
    STORE_HIT = "store_hit"
    UPSTREAM_FETCH = "upstream_fetch"
    DEGRADED_STALE = "degraded_stale"


class TierOutcome(str, Enum):
    HIT = "hit"
    MISS = "miss"
    STALE = "stale"


@dataclass(slots=True)
class TierResult:
    tier: str
    outcome: TierOutcome
    records: list = field(default_factory=list)


@dataclass(slots=True)
class ForecastResolution:
    records: list
    state: ResolutionState


@dataclass(slots=True)
class WeatherResponse:
    station: Station
    distance_km: float
    observation: Observation
    hourly: list[HourlyForecast]
    daily: list[DailyForecast]
    forecast_state: ResolutionState
    hourly_state: Optional[ResolutionState]


class HasFetchedAt(Protocol):
    fetched_at: Optional[datetime]


def snap_to_grid(lat: float, lon: float) -> tuple[float, float]:
    """Round coordinates to the 0.01 degree forecast grid."""
    return round(lat, GRID_PRECISION), round(lon, GRID_PRECISION)


def is_fresh(records: Sequence[HasFetchedAt], max_age: timedelta, *, now: Optional[datetime] = None) -> bool:
    """A batch is only as fresh as its oldest record."""
    if not records:
        return False
    stamps = [record.fetched_at for record in records]
    if any(stamp is None for stamp in stamps):
        return False
    oldest = min(stamps)  # type: ignore[type-var]
    current = now or datetime.now(timezone.utc)
    return current - oldest < max_age


def has_expanded_forecast_data(records: Sequence[DailyForecast]) -> bool:
    # rows written before temp_avg existed carry no average at all
    return any(record.temp_avg is not None for record in records)


def daily_cache_key(grid_lat: float, grid_lon: float) -> str:
    return f"{grid_lat:.2f},{grid_lon:.2f}"


def hourly_cache_key(grid_lat: float, grid_lon: float, limit: int) -> str:
    return f"{grid_lat:.2f},{grid_lon:.2f}:{limit}"


def uv_cache_key(grid_lat: float, grid_lon: float) -> str:
    return f"uv:{grid_lat:.2f},{grid_lon:.2f}"


def _truncate_hour(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def apply_uv_to_hourly(points: Sequence[UVDataPoint], hourly: Sequence[HourlyForecast]) -> list[HourlyForecast]:
    """Return copies of ``hourly`` with ``uv_cumulated`` filled from matching hours."""
    by_hour = {_truncate_hour(point.time): point.uv_cumulated for point in points}
    enriched: list[HourlyForecast] = []
    for entry in hourly:
        uv_value = by_hour.get(_truncate_hour(entry.forecast_time))
        enriched.append(replace(entry, uv_cumulated=uv_value) if uv_value is not None else entry)
    return enriched


def apply_uv_to_daily(points: Sequence[UVDataPoint], daily: Sequence[DailyForecast]) -> list[DailyForecast]:
    """Return copies of ``daily`` with ``uv_index_avg`` set to the mean UV of each UTC date."""
    by_day: dict[date, list[float]] = defaultdict(list)
    for point in points:
        by_day[point.time.astimezone(timezone.utc).date()].append(point.uv_cumulated)
    enriched: list[DailyForecast] = []
    for forecast in daily:
        values = by_day.get(forecast.forecast_date)
        if values:
            enriched.append(replace(forecast, uv_index_avg=sum(values) / len(values)))
        else:
            enriched.append(forecast)
    return enriched


class WeatherService:
    """Serves current conditions plus daily and hourly forecasts for a location.

    Forecasts resolve through ordered tiers: in-memory cache, persisted store,
    upstream fetch, and finally stale persisted data when upstream fails.
    """

    def __init__(
        self,
        *,
        client: FmiClient,
        store: WeatherStore,
        cache_ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        ttl = settings.forecast_cache_ttl_seconds if cache_ttl_seconds is None else cache_ttl_seconds
        self._client = client
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._daily_cache: FreshnessCache[list[DailyForecast]] = FreshnessCache(ttl)
        self._hourly_cache: FreshnessCache[list[HourlyForecast]] = FreshnessCache(ttl)
        self._uv_cache: FreshnessCache[list[UVDataPoint]] = FreshnessCache(ttl)

    def clear_cache(self) -> None:
        self._daily_cache.clear()
        self._hourly_cache.clear()
        self._uv_cache.clear()

    async def close(self) -> None:
        await self._client.close()

    async def get_weather(self, lat: float, lon: float) -> WeatherResponse:
        nearest = await self._store.nearest_station(lat, lon)
        if nearest is None:
            raise WeatherDataUnavailable("no observation stations available")
        station, distance_km = nearest
        observation = await self._store.latest_observation(station.station_id)
        if observation is None:
            raise WeatherDataUnavailable(f"no observations for station {station.station_id}")

        grid_lat, grid_lon = snap_to_grid(lat, lon)
        daily_resolution = await self.resolve_daily_forecast(grid_lat, grid_lon)
        daily: list[DailyForecast] = list(daily_resolution.records)

        hourly: list[HourlyForecast] = []
        hourly_state: Optional[ResolutionState] = None
        try:
            hourly_resolution = await self.resolve_hourly_forecast(grid_lat, grid_lon, settings.hourly_forecast_hours)
        except FmiError as exc:
            logger.warning("Hourly forecast unavailable for %.2f,%.2f: %s", grid_lat, grid_lon, exc)
        else:
            hourly = list(hourly_resolution.records)
            hourly_state = hourly_resolution.state

        uv_points = await self._get_uv_points(grid_lat, grid_lon)
        if uv_points:
            hourly = apply_uv_to_hourly(uv_points, hourly)
            daily = apply_uv_to_daily(uv_points, daily)
            await self._persist(
                "UV-enriched hourly forecasts",
                lambda: self._store.upsert_hourly_forecasts(grid_lat, grid_lon, hourly),
            )
            await self._persist("UV-enriched daily forecasts", lambda: self._store.upsert_forecasts(daily))

        return WeatherResponse(
            station=station,
            distance_km=distance_km,
            observation=observation,
            hourly=hourly,
            daily=daily,
            forecast_state=daily_resolution.state,
            hourly_state=hourly_state,
        )

    # Daily --------------------------------------------------------------------

    async def resolve_daily_forecast(self, grid_lat: float, grid_lon: float) -> ForecastResolution:
        key = daily_cache_key(grid_lat, grid_lon)

        cached = self._check_daily_cache(key)
        if cached.outcome is TierOutcome.HIT:
            return ForecastResolution(cached.records, ResolutionState.CACHE_HIT)

        stored = await self._check_daily_store(grid_lat, grid_lon)
        if stored.outcome is TierOutcome.HIT:
            self._daily_cache.set(key, stored.records)
            return ForecastResolution(stored.records, ResolutionState.STORE_HIT)

        try:
            records = await self._fetch_daily(grid_lat, grid_lon)
        except FmiError as exc:
            if stored.outcome is TierOutcome.STALE and stored.records:
                logger.warning("Serving stale daily forecast for %s: %s", key, exc)
                return ForecastResolution(stored.records, ResolutionState.DEGRADED_STALE)
            raise

        await self._persist("daily forecasts", lambda: self._store.upsert_forecasts(records))
        self._daily_cache.set(key, records)
        return ForecastResolution(records, ResolutionState.UPSTREAM_FETCH)

    def _check_daily_cache(self, key: str) -> TierResult:
        cached = self._daily_cache.get(key)
        if cached and has_expanded_forecast_data(cached):
            return TierResult("cache", TierOutcome.HIT, cached)
        return TierResult("cache", TierOutcome.MISS)

    async def _check_daily_store(self, grid_lat: float, grid_lon: float) -> TierResult:
        try:
            records = await self._store.get_forecasts(grid_lat, grid_lon, today=self._clock().date())
        except Exception as exc:  # noqa: BLE001 - a broken store must not block upstream
            logger.warning("Reading persisted forecasts failed: %s", exc)
            return TierResult("store", TierOutcome.MISS)
        if not records or not has_expanded_forecast_data(records):
            return TierResult("store", TierOutcome.MISS)
        max_age = timedelta(minutes=settings.forecast_freshness_minutes)
        if is_fresh(records, max_age, now=self._clock()):
            return TierResult("store", TierOutcome.HIT, records)
        return TierResult("store", TierOutcome.STALE, records)

    async def _fetch_daily(self, grid_lat: float, grid_lon: float) -> list[DailyForecast]:
        now = self._clock()
        body = await self._client.fetch_forecast(grid_lat, grid_lon, now=now)
        records = parse_forecast(body, grid_lat, grid_lon, fetched_at=now)
        logger.info("Fetched %s daily forecast records for %.2f,%.2f", len(records), grid_lat, grid_lon)
        return records

    # Hourly -------------------------------------------------------------------

    async def resolve_hourly_forecast(self, grid_lat: float, grid_lon: float, limit: int) -> ForecastResolution:
        key = hourly_cache_key(grid_lat, grid_lon, limit)

        cached = self._hourly_cache.get(key)
        if cached:
            return ForecastResolution(cached, ResolutionState.CACHE_HIT)

        stored = await self._check_hourly_store(grid_lat, grid_lon, limit)
        if stored.outcome is TierOutcome.HIT:
            self._hourly_cache.set(key, stored.records)
            return ForecastResolution(stored.records, ResolutionState.STORE_HIT)

        try:
            records = await self._fetch_hourly(grid_lat, grid_lon, limit)
        except FmiError as exc:
            if stored.outcome is TierOutcome.STALE and stored.records:
                logger.warning("Serving stale hourly forecast for %s: %s", key, exc)
                return ForecastResolution(stored.records, ResolutionState.DEGRADED_STALE)
            raise

        await self._persist(
            "hourly forecasts",
            lambda: self._store.upsert_hourly_forecasts(grid_lat, grid_lon, records),
        )
        self._hourly_cache.set(key, records)
        return ForecastResolution(records, ResolutionState.UPSTREAM_FETCH)

    async def _check_hourly_store(self, grid_lat: float, grid_lon: float, limit: int) -> TierResult:
        try:
            records = await self._store.get_hourly_forecasts(grid_lat, grid_lon, limit, now=self._clock())
        except Exception as exc:  # noqa: BLE001 - a broken store must not block upstream
            logger.warning("Reading persisted hourly forecasts failed: %s", exc)
            return TierResult("store", TierOutcome.MISS)
        if not records:
            return TierResult("store", TierOutcome.MISS)
        max_age = timedelta(minutes=settings.hourly_freshness_minutes)
        if is_fresh(records, max_age, now=self._clock()):
            return TierResult("store", TierOutcome.HIT, records)
        return TierResult("store", TierOutcome.STALE, records)

    async def _fetch_hourly(self, grid_lat: float, grid_lon: float, limit: int) -> list[HourlyForecast]:
        now = self._clock()
        body = await self._client.fetch_hourly_forecast(grid_lat, grid_lon, limit, now=now)
        return parse_hourly_forecast(body, limit, fetched_at=now)

    # UV -----------------------------------------------------------------------

    async def _get_uv_points(self, grid_lat: float, grid_lon: float) -> list[UVDataPoint]:
        key = uv_cache_key(grid_lat, grid_lon)
        cached = self._uv_cache.get(key)
        if cached:
            return cached
        try:
            points = await self._client.fetch_uv_forecast(grid_lat, grid_lon, now=self._clock())
        except FmiError as exc:
            logger.warning("UV forecast fetch failed: %s", exc)
            return []
        if points:
            logger.info("Fetched %s UV forecast points for %.2f,%.2f", len(points), grid_lat, grid_lon)
            self._uv_cache.set(key, points)
        return points

    async def _persist(self, label: str, write: Callable[[], Awaitable[Any]]) -> None:
        try:
            await write()
        except Exception as exc:  # noqa: BLE001 - persistence is best-effort
            logger.warning("Failed to store %s: %s", label, exc)


weather_service = WeatherService(client=fmi_client, store=weather_store)
