import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT / "src"
FIXTURES = Path(__file__).resolve().parent / "fixtures"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Keep the module-level store off the real data directory and the fetcher off the network.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="wby-tests-")
os.environ.setdefault("WEATHER_DB", str(Path(_TEST_DB_DIR) / "weather.sqlite"))
os.environ.setdefault("OBSERVATION_FETCH_ENABLED", "false")
os.environ.setdefault("FMI_API_KEY", "")

from fastapi.testclient import TestClient  # noqa: E402

from config import settings  # noqa: E402
from main import create_app  # noqa: E402
from services.weather import weather_service  # noqa: E402
from services.weather_store import weather_store  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_weather_services() -> None:
    weather_service.clear_cache()
    asyncio.run(weather_store.clear())
    yield
    weather_service.clear_cache()
    asyncio.run(weather_store.clear())


@pytest.fixture
def settings_override() -> Callable[..., None]:
    original: Dict[str, Any] = {}

    def _apply(**overrides: Any) -> None:
        for key, value in overrides.items():
            if key not in original:
                original[key] = getattr(settings, key)
            setattr(settings, key, value)

    yield _apply

    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture
def fixture_bytes() -> Callable[[str], bytes]:
    def _load(name: str) -> bytes:
        return (FIXTURES / name).read_bytes()

    return _load


@pytest.fixture
def client(settings_override: Callable[..., None]) -> TestClient:
    settings_override(observation_fetch_enabled=False)
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
