from __future__ import annotations

import asyncio
import logging
from typing import Optional

from config import settings
from fmi.client import FmiClient, fmi_client
from fmi.parser import parse_observations
from services.weather_store import WeatherStore, weather_store

logger = logging.getLogger("wby.server.fetcher")


class ObservationFetcher:
    """Periodically pulls the latest all-station observations into the store."""

    def __init__(self, client: FmiClient, store: WeatherStore, interval_seconds: float) -> None:
        self._client = client
        self._store = store
        self._interval = max(interval_seconds, 1.0)
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event), name="observation-fetcher")
        logger.info("Observation fetcher started (interval %.0fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            self._stop_event = None
            logger.info("Observation fetcher stopped")

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> int:
        """Fetch, decode and store one batch. Returns the number of observations stored."""
        try:
            body = await self._client.fetch_observations()
            result = parse_observations(body)
            if not result.stations:
                logger.warning("Observation fetch returned no stations; nothing stored")
                return 0
            await self._store.upsert_stations(result.stations)
            await self._store.upsert_observations(result.observations)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - the next tick retries
            logger.error("Observation fetch cycle failed: %s", exc, exc_info=True)
            return 0
        logger.info(
            "Stored %s observations from %s stations",
            len(result.observations),
            len(result.stations),
        )
        return len(result.observations)


_FETCHER: Optional[ObservationFetcher] = None


async def start_fetcher(
    client: Optional[FmiClient] = None,
    store: Optional[WeatherStore] = None,
    *,
    interval_seconds: Optional[float] = None,
) -> None:
    global _FETCHER
    if _FETCHER is not None:
        return
    _FETCHER = ObservationFetcher(
        client or fmi_client,
        store or weather_store,
        interval_seconds if interval_seconds is not None else settings.observation_fetch_interval_seconds,
    )
    await _FETCHER.start()


async def stop_fetcher() -> None:
    global _FETCHER
    if _FETCHER is None:
        return
    await _FETCHER.stop()
    _FETCHER = None
