"""Unit tests for the API-key guard on adlayer routes."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.adlayer_core.api.auth import API_KEY_HEADER
from src.adlayer_core.cache.snapshot_store import InMemorySnapshotStore
from src.adlayer_core.config import Settings
from src.adlayer_core.fetch.models import FetchResult
from src.adlayer_core.main import create_app
from src.adlayer_core.services import AdLayerServices


PROTECTED = [
    ("get", "/api/v1/meta/ads?store_id=S&scope_id=as_1", None),
    ("post", "/api/v1/refresh", {"store_id": "S"}),
    ("get", "/api/v1/refresh/S", None),
    ("post", "/api/v1/attribution/resolve", {"store_id": "S", "campaign_name": "Spring"}),
]


@pytest.fixture
def services(tokens):
    services = AdLayerServices.build(
        Settings(snapshot_backend="memory"),
        client=MagicMock(),
        backend=InMemorySnapshotStore(),
        tokens=tokens,
    )
    services.orchestrator.fetch = AsyncMock(return_value=FetchResult(data=[]))
    return services


@pytest.fixture
def app(services):
    return create_app(services)


def _call(client, method, path, body, headers=None):
    if method == "get":
        return client.get(path, headers=headers)
    return client.post(path, json=body, headers=headers)


@pytest.mark.parametrize("method, path, body", PROTECTED)
def test_every_route_requires_key(monkeypatch, app, method, path, body):
    monkeypatch.setenv("ADLAYER_API_KEY", "right-key")

    with TestClient(app) as client:
        missing = _call(client, method, path, body)
        wrong = _call(client, method, path, body, {API_KEY_HEADER: "wrong-key"})

    for response in (missing, wrong):
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"
        assert response.headers["WWW-Authenticate"] == "API-Key"


def test_valid_key_reaches_fetch(monkeypatch, app, services):
    monkeypatch.setenv("ADLAYER_API_KEY", "right-key")

    with TestClient(app) as client:
        response = client.get(
            "/api/v1/meta/ads",
            params={"store_id": "S", "scope_id": "as_1"},
            headers={API_KEY_HEADER: "right-key"},
        )

    assert response.status_code == 200
    services.orchestrator.fetch.assert_awaited_once()


def test_key_rotation_applies_without_restart(monkeypatch, app):
    monkeypatch.setenv("ADLAYER_API_KEY", "old-key")

    with TestClient(app) as client:
        assert client.get("/api/v1/refresh/S", headers={API_KEY_HEADER: "old-key"}).status_code == 404
        monkeypatch.setenv("ADLAYER_API_KEY", "new-key")
        assert client.get("/api/v1/refresh/S", headers={API_KEY_HEADER: "old-key"}).status_code == 401


def test_unconfigured_key_rejects_with_503(monkeypatch, app, services):
    monkeypatch.delenv("ADLAYER_API_KEY", raising=False)

    with TestClient(app) as client:
        response = client.get(
            "/api/v1/meta/ads",
            params={"store_id": "S", "scope_id": "as_1"},
            headers={API_KEY_HEADER: "anything"},
        )

    assert response.status_code == 503
    services.orchestrator.fetch.assert_not_awaited()
