import pytest
from fastapi.testclient import TestClient

from fakes import FakeSupabase
from globe.beacons import BeaconRegistry
from webapp import config
from webapp.app import create_app
from webapp.routers.beacons import get_registry
from webapp.services import gateway
from webapp.services.auth import get_gateway
from webapp.services.gateway import DataGateway

CRON_SECRET = "cron-secret"


@pytest.fixture(autouse=True)
def _clear_gateway_cache():
    gateway.cache_clear()
    DataGateway._lock = None
    yield
    gateway.cache_clear()
    DataGateway._lock = None


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def registry():
    return BeaconRegistry()


@pytest.fixture
def app(fake_db, registry, monkeypatch):
    monkeypatch.setattr(config, "CRON_SECRET", CRON_SECRET)
    monkeypatch.setattr(config, "GOOGLE_MAPS_API_KEY", None)
    application = create_app()
    application.dependency_overrides[get_gateway] = lambda: DataGateway(fake_db)
    application.dependency_overrides[get_registry] = lambda: registry
    return application


@pytest.fixture
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
