import pytest

from gastozap.core.config import get_settings
from gastozap.core.kv_store import MemoryStore
from gastozap.core.runtime import AIRuntimeConfig, ConfigSource


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Tests mutate env vars; never leak a cached Settings instance across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_config_source():
    """Build a ConfigSource from explicit ``AIRuntimeConfig`` fields."""

    def _make(**fields) -> ConfigSource:
        return ConfigSource(AIRuntimeConfig(**fields))

    return _make


@pytest.fixture
def frozen_clock(monkeypatch):
    """Controllable ``time.time`` for the store and the usage meter."""
    clock = {"now": 1_700_000_000.0}

    def fake_time():
        return clock["now"]

    monkeypatch.setattr("gastozap.core.kv_store.time.time", fake_time)
    monkeypatch.setattr("gastozap.utils.usage_meter.time.time", fake_time)
    return clock
