from __future__ import annotations

import asyncio
import json
import logging
import math
import sqlite3
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

from config import settings
from fmi.models import (
    DAILY_VALUE_FIELDS,
    HOURLY_VALUE_FIELDS,
    OBSERVATION_VALUE_FIELDS,
    DailyForecast,
    HourlyForecast,
    Observation,
    Station,
    isoformat_utc,
)

logger = logging.getLogger("wby.server.store")

EARTH_RADIUS_KM = 6371.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _column_type(name: str) -> str:
    return "TEXT" if name == "symbol" else "REAL"


def _columns_sql(names: Iterable[str]) -> str:
    return ",\n                    ".join(f"{name} {_column_type(name)}" for name in names)


class WeatherStore:
    """SQLite persistence for stations, observations and forecasts.

    Timestamps are stored as UTC ISO strings with a trailing ``Z`` so that
    lexical comparison matches chronological order.
    """

    def __init__(self, *, db_path: Path, hourly_retention_days: float = 3.0) -> None:
        self._db_path = db_path
        self._hourly_retention = max(hourly_retention_days, 0.0)
        self._lock = asyncio.Lock()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _initialize(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stations (
                    station_id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    wmo_code TEXT
                );
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS observations (
                    station_id INTEGER NOT NULL,
                    observed_at TEXT NOT NULL,
                    {_columns_sql(OBSERVATION_VALUE_FIELDS)},
                    extra TEXT,
                    PRIMARY KEY (station_id, observed_at)
                );
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS forecasts (
                    grid_lat REAL NOT NULL,
                    grid_lon REAL NOT NULL,
                    forecast_for TEXT NOT NULL,
                    fetched_at TEXT NOT NULL,
                    {_columns_sql(DAILY_VALUE_FIELDS)},
                    UNIQUE (grid_lat, grid_lon, forecast_for)
                );
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS hourly_forecasts (
                    grid_lat REAL NOT NULL,
                    grid_lon REAL NOT NULL,
                    forecast_time TEXT NOT NULL,
                    fetched_at TEXT NOT NULL,
                    {_columns_sql(HOURLY_VALUE_FIELDS)},
                    UNIQUE (grid_lat, grid_lon, forecast_time)
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_obs_station_ts ON observations(station_id, observed_at);")
            conn.commit()

    # Stations -----------------------------------------------------------------

    async def upsert_stations(self, stations: List[Station]) -> None:
        if not stations:
            return
        async with self._lock:
            await asyncio.to_thread(self._upsert_stations, stations)

    def _upsert_stations(self, stations: List[Station]) -> None:
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO stations (station_id, name, latitude, longitude, wmo_code)
                VALUES (:station_id, :name, :latitude, :longitude, :wmo_code)
                ON CONFLICT(station_id) DO UPDATE SET
                    name = excluded.name,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    wmo_code = excluded.wmo_code;
                """,
                [
                    {
                        "station_id": station.station_id,
                        "name": station.name,
                        "latitude": station.latitude,
                        "longitude": station.longitude,
                        "wmo_code": station.wmo_code,
                    }
                    for station in stations
                ],
            )
            conn.commit()

    async def nearest_station(self, lat: float, lon: float) -> Optional[Tuple[Station, float]]:
        async with self._lock:
            stations = await asyncio.to_thread(self._select_stations)
        best: Optional[Tuple[Station, float]] = None
        for station in stations:
            distance = haversine_km(lat, lon, station.latitude, station.longitude)
            if best is None or distance < best[1]:
                best = (station, distance)
        return best

    def _select_stations(self) -> List[Station]:
        with self._connect() as conn:
            cursor = conn.execute("SELECT station_id, name, latitude, longitude, wmo_code FROM stations;")
            return [
                Station(
                    station_id=row["station_id"],
                    name=row["name"],
                    latitude=row["latitude"],
                    longitude=row["longitude"],
                    wmo_code=row["wmo_code"],
                )
                for row in cursor
            ]

    # Observations -------------------------------------------------------------

    async def upsert_observations(self, observations: List[Observation]) -> None:
        if not observations:
            return
        async with self._lock:
            await asyncio.to_thread(self._upsert_observations, observations)

    def _upsert_observations(self, observations: List[Observation]) -> None:
        columns = ("station_id", "observed_at", *OBSERVATION_VALUE_FIELDS, "extra")
        updates = ", ".join(f"{name} = excluded.{name}" for name in (*OBSERVATION_VALUE_FIELDS, "extra"))
        rows = []
        for observation in observations:
            row: dict[str, Any] = {name: getattr(observation, name) for name in OBSERVATION_VALUE_FIELDS}
            row["station_id"] = observation.station_id
            row["observed_at"] = isoformat_utc(observation.observed_at)
            row["extra"] = json.dumps(observation.extra, sort_keys=True) if observation.extra else None
            rows.append(row)
        with self._connect() as conn:
            conn.executemany(
                f"""
                INSERT INTO observations ({', '.join(columns)})
                VALUES ({', '.join(':' + name for name in columns)})
                ON CONFLICT(station_id, observed_at) DO UPDATE SET {updates};
                """,
                rows,
            )
            conn.commit()

    async def latest_observation(self, station_id: int) -> Optional[Observation]:
        async with self._lock:
            return await asyncio.to_thread(self._select_latest_observation, station_id)

    def _select_latest_observation(self, station_id: int) -> Optional[Observation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM observations
                WHERE station_id = ?
                ORDER BY observed_at DESC
                LIMIT 1;
                """,
                (station_id,),
            ).fetchone()
        if row is None:
            return None
        observed_at = _parse_iso(row["observed_at"])
        if observed_at is None:
            return None
        extra = json.loads(row["extra"]) if row["extra"] else {}
        return Observation(
            station_id=row["station_id"],
            observed_at=observed_at,
            extra=extra,
            **{name: row[name] for name in OBSERVATION_VALUE_FIELDS},
        )

    # Daily forecasts ----------------------------------------------------------

    async def upsert_forecasts(self, forecasts: List[DailyForecast]) -> None:
        if not forecasts:
            return
        async with self._lock:
            await asyncio.to_thread(self._upsert_forecasts, forecasts)

    def _upsert_forecasts(self, forecasts: List[DailyForecast]) -> None:
        columns = ("grid_lat", "grid_lon", "forecast_for", "fetched_at", *DAILY_VALUE_FIELDS)
        updates = ", ".join(f"{name} = excluded.{name}" for name in ("fetched_at", *DAILY_VALUE_FIELDS))
        rows = []
        for forecast in forecasts:
            row: dict[str, Any] = {name: getattr(forecast, name) for name in DAILY_VALUE_FIELDS}
            row["grid_lat"] = forecast.grid_lat
            row["grid_lon"] = forecast.grid_lon
            row["forecast_for"] = forecast.forecast_date.isoformat()
            row["fetched_at"] = isoformat_utc(forecast.fetched_at)
            rows.append(row)
        with self._connect() as conn:
            conn.executemany(
                f"""
                INSERT INTO forecasts ({', '.join(columns)})
                VALUES ({', '.join(':' + name for name in columns)})
                ON CONFLICT(grid_lat, grid_lon, forecast_for) DO UPDATE SET {updates};
                """,
                rows,
            )
            conn.commit()

    async def get_forecasts(
        self,
        grid_lat: float,
        grid_lon: float,
        limit: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> List[DailyForecast]:
        first_day = today or _utc_now().date()
        async with self._lock:
            return await asyncio.to_thread(self._select_forecasts, grid_lat, grid_lon, first_day, limit)

    def _select_forecasts(
        self,
        grid_lat: float,
        grid_lon: float,
        first_day: date,
        limit: Optional[int],
    ) -> List[DailyForecast]:
        sql = """
            SELECT * FROM forecasts
            WHERE grid_lat = ? AND grid_lon = ? AND forecast_for >= ?
            ORDER BY forecast_for ASC
        """
        params: list[Any] = [grid_lat, grid_lon, first_day.isoformat()]
        if limit is not None and limit > 0:
            sql += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        results: List[DailyForecast] = []
        for row in rows:
            fetched_at = _parse_iso(row["fetched_at"])
            if fetched_at is None:
                continue
            results.append(
                DailyForecast(
                    grid_lat=row["grid_lat"],
                    grid_lon=row["grid_lon"],
                    forecast_date=date.fromisoformat(row["forecast_for"]),
                    fetched_at=fetched_at,
                    **{name: row[name] for name in DAILY_VALUE_FIELDS},
                )
            )
        return results

    # Hourly forecasts ---------------------------------------------------------

    async def upsert_hourly_forecasts(
        self,
        grid_lat: float,
        grid_lon: float,
        hourly: List[HourlyForecast],
    ) -> None:
        if not hourly:
            return
        async with self._lock:
            await asyncio.to_thread(self._upsert_hourly, grid_lat, grid_lon, hourly, _utc_now())

    def _upsert_hourly(
        self,
        grid_lat: float,
        grid_lon: float,
        hourly: List[HourlyForecast],
        now: datetime,
    ) -> None:
        columns = ("grid_lat", "grid_lon", "forecast_time", "fetched_at", *HOURLY_VALUE_FIELDS)
        updates = ", ".join(f"{name} = excluded.{name}" for name in ("fetched_at", *HOURLY_VALUE_FIELDS))
        rows = []
        for entry in hourly:
            row: dict[str, Any] = {name: getattr(entry, name) for name in HOURLY_VALUE_FIELDS}
            row["grid_lat"] = grid_lat
            row["grid_lon"] = grid_lon
            row["forecast_time"] = isoformat_utc(entry.forecast_time)
            row["fetched_at"] = isoformat_utc(entry.fetched_at or now)
            rows.append(row)
        with self._connect() as conn:
            conn.executemany(
                f"""
                INSERT INTO hourly_forecasts ({', '.join(columns)})
                VALUES ({', '.join(':' + name for name in columns)})
                ON CONFLICT(grid_lat, grid_lon, forecast_time) DO UPDATE SET {updates};
                """,
                rows,
            )
            if self._hourly_retention > 0:
                cutoff = isoformat_utc(now - timedelta(days=self._hourly_retention))
                deleted = conn.execute("DELETE FROM hourly_forecasts WHERE forecast_time < ?", (cutoff,)).rowcount
                if deleted:
                    logger.debug("Pruned %s expired hourly forecast rows", deleted)
            conn.commit()

    async def get_hourly_forecasts(
        self,
        grid_lat: float,
        grid_lon: float,
        limit: int,
        *,
        now: Optional[datetime] = None,
    ) -> List[HourlyForecast]:
        current_hour = (now or _utc_now()).astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
        async with self._lock:
            return await asyncio.to_thread(self._select_hourly, grid_lat, grid_lon, current_hour, limit)

    def _select_hourly(
        self,
        grid_lat: float,
        grid_lon: float,
        current_hour: datetime,
        limit: int,
    ) -> List[HourlyForecast]:
        sql = """
            SELECT * FROM hourly_forecasts
            WHERE grid_lat = ? AND grid_lon = ? AND forecast_time >= ?
            ORDER BY forecast_time ASC
        """
        params: list[Any] = [grid_lat, grid_lon, isoformat_utc(current_hour)]
        if limit > 0:
            sql += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        results: List[HourlyForecast] = []
        for row in rows:
            forecast_time = _parse_iso(row["forecast_time"])
            if forecast_time is None:
                continue
            results.append(
                HourlyForecast(
                    forecast_time=forecast_time,
                    fetched_at=_parse_iso(row["fetched_at"]),
                    **{name: row[name] for name in HOURLY_VALUE_FIELDS},
                )
            )
        return results

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._clear)

    def _clear(self) -> None:
        with self._connect() as conn:
            for table in ("observations", "stations", "forecasts", "hourly_forecasts"):
                conn.execute(f"DELETE FROM {table};")
            conn.commit()


weather_store = WeatherStore(
    db_path=Path(settings.weather_db),
    hourly_retention_days=settings.hourly_retention_days,
)
