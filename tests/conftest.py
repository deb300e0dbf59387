"""Shared pytest fixtures for telemetry monitor tests.

The root conftest.py has already set TESTING and RETENTION_ENABLED.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from config.devices import DeviceDirectory
from core.cache_manager import CacheManager
from core.db import DatabaseManager
from core.storage import TelemetryStore


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Settings are an lru_cache singleton; reset between tests for isolation."""
    from config.settings import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Devices
# =============================================================================

@pytest.fixture
def device_config():
    return {
        "thresholds": {
            "latency": {"good": 50, "degraded": 150},
            "packetLoss": {"good": 1, "degraded": 5},
        },
        "devices": [
            {"id": "core-sw1", "ip": "10.0.0.1", "name": "Core Switch 1",
             "areaId": "dc1", "snmpEnabled": True},
            {"id": "edge-rtr1", "ip": "10.0.0.254:161", "name": "Edge Router",
             "areaId": "dc1", "snmpEnabled": True,
             "thresholds": {"good": {"latency": 20}}},
            {"id": "ap-lobby", "ip": "10.0.10.5", "name": "Lobby AP"},
        ],
    }


@pytest.fixture
def directory(device_config):
    return DeviceDirectory.from_dict(device_config)


# =============================================================================
# Store Fixtures
# =============================================================================

@pytest.fixture
def sqlite_store(tmp_path):
    """A real TelemetryStore on a per-test SQLite file."""
    store = TelemetryStore(DatabaseManager(db_path=tmp_path / "telemetry.db", pool_size=2))
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def mock_store():
    """A store double that accepts every known table/operation and records batches."""
    store = MagicMock(spec=TelemetryStore)
    store.supports.side_effect = TelemetryStore.supports
    store.write_batch.side_effect = lambda groups: sum(len(g[2]) for g in groups)
    return store


# =============================================================================
# Cache Fixtures
# =============================================================================

@pytest.fixture
def fake_redis():
    """An async redis client double; every command succeeds by default."""
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.mget = AsyncMock(return_value=[])
    client.publish = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return client


@pytest_asyncio.fixture
async def ready_cache(fake_redis):
    """A CacheManager connected to ``fake_redis``."""
    cache = CacheManager(client_factory=lambda: fake_redis, reconnect_base_delay=0.01)
    assert await cache.connect()
    yield cache
    await cache.disconnect()


@pytest.fixture
def mock_cache():
    """CacheManager double for code that only consumes the cache."""
    cache = MagicMock(spec=CacheManager)
    cache.is_available.return_value = True
    cache.get.return_value = None
    cache.set.return_value = True
    cache.publish.return_value = True
    cache.keys.return_value = []
    cache.mget.return_value = {}
    return cache


# =============================================================================
# Application Fixtures
# =============================================================================

@pytest.fixture
def app_settings(tmp_path):
    from config.settings import AppSettings
    return AppSettings(devices_file=tmp_path / "missing.yaml")


@pytest.fixture
def service_ctx(app_settings, directory, sqlite_store):
    """Services wired to a real SQLite store and a never-connected cache."""
    from monitor.lifecycle import build_services
    ctx = build_services(
        app_settings,
        directory=directory,
        store=sqlite_store,
        cache=CacheManager(),
    )
    ctx.ready = True
    return ctx


@pytest_asyncio.fixture
async def client(service_ctx):
    """aiohttp test client for the application (services not auto-started)."""
    from aiohttp.test_utils import TestClient, TestServer
    from monitor.app import create_app

    app = create_app(service_ctx, manage_lifecycle=False)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client
