from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from config import settings
from .errors import FmiTransportError
from .models import UVDataPoint

logger = logging.getLogger("wby.server.fmi.client")

OBSERVATIONS_QUERY = "fmi::observations::weather::timevaluepair"
FORECAST_QUERY = "fmi::forecast::edited::weather::scandinavia::point::timevaluepair"
FORECAST_TIMESTEP_MINUTES = 60
UV_TIMESTEPS = 30
MAX_ERROR_BODY = 2048


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(timestamp: datetime) -> str:
    return timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _current_hour(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def _latlon(lat: float, lon: float) -> str:
    return "%f,%f" % (lat, lon)


class FmiClient:
    """Thin async wrapper around the FMI WFS and timeseries endpoints.

    Every method returns the raw response body (or decoded UV points); XML
    decoding lives in ``fmi.parser`` so callers can test it without a network.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"User-Agent": settings.fmi_user_agent}
            self._client = httpx.AsyncClient(headers=headers, timeout=settings.fmi_request_timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(self, url: str, params: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise FmiTransportError(f"request to {url} failed: {exc}") from exc
        if response.status_code != 200:
            logger.warning(
                "Upstream %s answered %s: %s",
                url,
                response.status_code,
                response.text[:MAX_ERROR_BODY],
            )
            raise FmiTransportError(f"unexpected status {response.status_code} from {url}")
        return response

    async def _stored_query(self, query_id: str, **params: Any) -> bytes:
        query = {
            "service": "WFS",
            "version": "2.0.0",
            "request": "getFeature",
            "storedquery_id": query_id,
        }
        query.update(params)
        logger.debug("Running stored query %s", query_id)
        response = await self._get(settings.fmi_base_url, query)
        return response.content

    async def fetch_observations(self, *, now: Optional[datetime] = None) -> bytes:
        start = (now or _utc_now()) - timedelta(minutes=settings.observation_window_minutes)
        return await self._stored_query(
            OBSERVATIONS_QUERY,
            bbox=settings.observation_bbox,
            timestep=settings.observation_timestep_minutes,
            maxlocations=settings.observation_max_locations,
            starttime=_format_time(start),
        )

    async def fetch_forecast(self, lat: float, lon: float, *, now: Optional[datetime] = None) -> bytes:
        start = _current_hour(now or _utc_now())
        end = start + timedelta(days=max(settings.forecast_days, 1) - 1)
        return await self._stored_query(
            FORECAST_QUERY,
            latlon=_latlon(lat, lon),
            timestep=FORECAST_TIMESTEP_MINUTES,
            starttime=_format_time(start),
            endtime=_format_time(end),
        )

    async def fetch_hourly_forecast(
        self,
        lat: float,
        lon: float,
        limit: int,
        *,
        now: Optional[datetime] = None,
    ) -> bytes:
        start = _current_hour(now or _utc_now())
        end = start + timedelta(hours=max(limit, 1) - 1)
        return await self._stored_query(
            FORECAST_QUERY,
            latlon=_latlon(lat, lon),
            timestep=FORECAST_TIMESTEP_MINUTES,
            starttime=_format_time(start),
            endtime=_format_time(end),
        )

    async def fetch_uv_forecast(self, lat: float, lon: float, *, now: Optional[datetime] = None) -> list[UVDataPoint]:
        api_key = settings.fmi_api_key
        if not api_key:
            return []
        url = f"{settings.fmi_timeseries_url.rstrip('/')}/fmi-apikey/{api_key}/timeseries"
        params = {
            "param": "epochtime,uvCumulated",
            "producer": "uv",
            "format": "json",
            "latlon": _latlon(lat, lon),
            "timesteps": UV_TIMESTEPS,
            "starttime": _format_time(_current_hour(now or _utc_now())),
        }
        response = await self._get(url, params)
        try:
            payload = response.json()
        except ValueError:
            logger.warning("UV forecast response was not valid JSON; ignoring")
            return []
        return parse_uv_points(payload)


def parse_uv_points(payload: Any) -> list[UVDataPoint]:
    if not isinstance(payload, list):
        return []
    points: list[UVDataPoint] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        epoch = entry.get("epochtime")
        uv_value = entry.get("uvCumulated")
        if epoch is None or uv_value is None:
            continue
        try:
            moment = datetime.fromtimestamp(int(epoch), tz=timezone.utc)
            value = float(uv_value)
        except (TypeError, ValueError, OverflowError):
            continue
        points.append(UVDataPoint(time=moment, uv_cumulated=value))
    return points


fmi_client = FmiClient()
