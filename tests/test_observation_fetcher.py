import asyncio
import logging
from pathlib import Path

import pytest

from fmi.errors import FmiTransportError
from fmi.models import Station
from services.observation_fetcher import ObservationFetcher
from services.weather_store import WeatherStore

EMPTY_COLLECTION = b'<wfs:FeatureCollection xmlns:wfs="http://www.opengis.net/wfs/2.0"/>'


class _StubClient:
    def __init__(self, payloads: list) -> None:
        self._payloads = list(payloads)
        self.calls = 0

    async def fetch_observations(self) -> bytes:
        self.calls += 1
        payload = self._payloads[min(self.calls, len(self._payloads)) - 1]
        if isinstance(payload, Exception):
            raise payload
        return payload


@pytest.fixture
def store(tmp_path: Path) -> WeatherStore:
    return WeatherStore(db_path=tmp_path / "weather.sqlite")


@pytest.mark.anyio
async def test_run_once_stores_stations_and_observations(fixture_bytes, store: WeatherStore) -> None:
    fetcher = ObservationFetcher(_StubClient([fixture_bytes("observations.xml")]), store, 600.0)

    stored = await fetcher.run_once()

    assert stored == 3
    nearest = await store.nearest_station(60.17, 24.94)
    assert nearest is not None
    assert nearest[0].name == "Helsinki Kaisaniemi"
    latest = await store.latest_observation(100971)
    assert latest is not None
    assert latest.temperature == pytest.approx(-5.4)


@pytest.mark.anyio
async def test_run_once_with_no_stations_is_a_noop(store: WeatherStore, caplog) -> None:
    known = Station(station_id=100971, name="Helsinki Kaisaniemi", latitude=60.17523, longitude=24.94459)
    await store.upsert_stations([known])
    fetcher = ObservationFetcher(_StubClient([EMPTY_COLLECTION]), store, 600.0)

    with caplog.at_level(logging.WARNING, logger="wby.server.fetcher"):
        stored = await fetcher.run_once()

    assert stored == 0
    nearest = await store.nearest_station(60.17, 24.94)
    assert nearest is not None
    assert nearest[0].station_id == 100971
    assert nearest[0].name == "Helsinki Kaisaniemi"
    assert "no stations" in caplog.text


@pytest.mark.anyio
async def test_errors_are_logged_not_raised(store: WeatherStore, caplog) -> None:
    client = _StubClient([FmiTransportError("unexpected status 500"), b"<broken"])
    fetcher = ObservationFetcher(client, store, 600.0)

    with caplog.at_level(logging.ERROR, logger="wby.server.fetcher"):
        assert await fetcher.run_once() == 0
        assert await fetcher.run_once() == 0

    assert client.calls == 2
    assert caplog.text.count("Observation fetch cycle failed") == 2


@pytest.mark.anyio
async def test_start_runs_immediately_and_stop_ends_loop(fixture_bytes, store: WeatherStore) -> None:
    client = _StubClient([fixture_bytes("observations.xml")])
    fetcher = ObservationFetcher(client, store, 600.0)

    await fetcher.start()
    for _ in range(50):
        if client.calls:
            break
        await asyncio.sleep(0.01)
    await fetcher.stop()

    assert client.calls == 1
    assert not fetcher.running


@pytest.mark.anyio
async def test_loop_repeats_on_interval(store: WeatherStore) -> None:
    client = _StubClient([EMPTY_COLLECTION])
    fetcher = ObservationFetcher(client, store, 1.0)
    fetcher._interval = 0.01  # type: ignore[attr-defined]

    await fetcher.start()
    for _ in range(100):
        if client.calls >= 3:
            break
        await asyncio.sleep(0.01)
    await fetcher.stop()

    assert client.calls >= 3
