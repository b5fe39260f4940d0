import json
from datetime import datetime, timezone

import httpx
import pytest

from fmi.client import FORECAST_QUERY, OBSERVATIONS_QUERY, FmiClient, parse_uv_points
from fmi.errors import FmiTransportError

NOW = datetime(2024, 1, 15, 12, 34, 56, tzinfo=timezone.utc)


def _client(handler) -> tuple[FmiClient, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FmiClient(http_client=http), http


@pytest.mark.anyio
async def test_fetch_observations_query(settings_override) -> None:
    settings_override(fmi_base_url="https://wfs.test/wfs", observation_window_minutes=60)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"<wfs:FeatureCollection/>")

    client, http = _client(handler)
    body = await client.fetch_observations(now=NOW)
    await http.aclose()

    assert body == b"<wfs:FeatureCollection/>"
    params = seen[0].url.params
    assert seen[0].url.host == "wfs.test"
    assert params["service"] == "WFS"
    assert params["version"] == "2.0.0"
    assert params["request"] == "getFeature"
    assert params["storedquery_id"] == OBSERVATIONS_QUERY
    assert params["bbox"] == "19,59,32,71"
    assert params["timestep"] == "10"
    assert params["maxlocations"] == "200"
    assert params["starttime"] == "2024-01-15T11:34:56Z"


@pytest.mark.anyio
async def test_forecast_windows(settings_override) -> None:
    settings_override(forecast_days=11)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"<xml/>")

    client, http = _client(handler)
    await client.fetch_forecast(60.17, 24.94, now=NOW)
    await client.fetch_hourly_forecast(60.17, 24.94, 12, now=NOW)
    await http.aclose()

    daily, hourly = (request.url.params for request in seen)
    assert daily["storedquery_id"] == FORECAST_QUERY
    assert daily["latlon"] == "60.170000,24.940000"
    assert daily["timestep"] == "60"
    assert daily["starttime"] == "2024-01-15T12:00:00Z"
    assert daily["endtime"] == "2024-01-25T12:00:00Z"
    assert hourly["starttime"] == "2024-01-15T12:00:00Z"
    assert hourly["endtime"] == "2024-01-15T23:00:00Z"


@pytest.mark.anyio
async def test_non_200_raises_transport_error(caplog) -> None:
    client, http = _client(lambda request: httpx.Response(503, text="x" * 5000))

    with pytest.raises(FmiTransportError):
        await client.fetch_observations(now=NOW)
    await http.aclose()

    logged = [record.getMessage() for record in caplog.records if record.name == "wby.server.fmi.client"]
    assert logged
    assert "x" * 2048 in logged[0]
    assert "x" * 2049 not in logged[0]


@pytest.mark.anyio
async def test_network_errors_raise_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, http = _client(handler)
    with pytest.raises(FmiTransportError) as excinfo:
        await client.fetch_forecast(60.17, 24.94, now=NOW)
    await http.aclose()

    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


@pytest.mark.anyio
async def test_uv_forecast_is_skipped_without_key(settings_override) -> None:
    settings_override(fmi_api_key=None)

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client, http = _client(handler)
    assert await client.fetch_uv_forecast(60.17, 24.94, now=NOW) == []
    await http.aclose()


@pytest.mark.anyio
async def test_uv_forecast_request_and_decoding(settings_override) -> None:
    settings_override(fmi_api_key="secret", fmi_timeseries_url="https://ts.test/")
    seen: list[httpx.Request] = []
    payload = [
        {"epochtime": 1705320000, "uvCumulated": 0.3},
        {"epochtime": 1705323600, "uvCumulated": None},
        {"epochtime": 1705327200, "uvCumulated": 0.8},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=json.dumps(payload).encode("utf-8"))

    client, http = _client(handler)
    points = await client.fetch_uv_forecast(60.17, 24.94, now=NOW)
    await http.aclose()

    assert seen[0].url.path == "/fmi-apikey/secret/timeseries"
    params = seen[0].url.params
    assert params["param"] == "epochtime,uvCumulated"
    assert params["producer"] == "uv"
    assert params["format"] == "json"
    assert params["timesteps"] == "30"
    assert params["starttime"] == "2024-01-15T12:00:00Z"
    assert [point.time for point in points] == [
        datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc),
        datetime(2024, 1, 15, 14, 0, tzinfo=timezone.utc),
    ]
    assert [point.uv_cumulated for point in points] == [0.3, 0.8]


@pytest.mark.anyio
async def test_uv_forecast_bad_json_is_no_data(settings_override) -> None:
    settings_override(fmi_api_key="secret")
    client, http = _client(lambda request: httpx.Response(200, content=b"<html>maintenance</html>"))

    assert await client.fetch_uv_forecast(60.17, 24.94, now=NOW) == []
    await http.aclose()


def test_parse_uv_points_ignores_junk() -> None:
    assert parse_uv_points({"error": "nope"}) == []
    assert parse_uv_points([{"epochtime": "x", "uvCumulated": 1.0}, "junk"]) == []


@pytest.mark.anyio
async def test_close_leaves_injected_client_open() -> None:
    client, http = _client(lambda request: httpx.Response(200, content=b""))

    await client.close()

    assert not http.is_closed
    await http.aclose()
