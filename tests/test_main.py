import base64

import pytest
from fastapi.testclient import TestClient

from conftest import PNG, FakeBackend
from pagecapture.config import Settings
from pagecapture.main import app, get_session_factory


class _Sessions:
    def __init__(self, backend):
        self.backend = backend
        self.opened = 0

    async def __call__(self):
        self.opened += 1
        return self.backend


@pytest.fixture
def sessions():
    sessions = _Sessions(FakeBackend(missing={".gone"}))
    app.dependency_overrides[get_session_factory] = lambda: sessions
    yield sessions
    app.dependency_overrides.clear()


@pytest.fixture
def client(sessions):
    return TestClient(app)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_devices_lists_presets(client):
    assert "iphone-16-pro" in client.get("/devices").json()["devices"]


def test_capture_returns_image_and_closes_session(client, sessions):
    response = client.post(
        "/capture",
        json={"url": "example.com", "steps": [{"type": "click", "target": ".gone"}, {"type": "screenshot"}]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    image = next(block for block in body["content"] if block["type"] == "image")
    assert base64.b64decode(image["data"]) == PNG
    assert body["outcome"]["stepResults"][0]["code"] == "ELEMENT_NOT_FOUND"
    assert sessions.opened == 1
    assert sessions.backend.closed is True


def test_validate_mode_opens_no_session(client, sessions):
    response = client.post(
        "/capture",
        json={"url": "https://example.com", "validate": True, "steps": [{"type": "waitForSelector", "awaitElement": ".x"}]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["validation"]["orderedSteps"][0] == {"type": "wait", "for": ".x"}
    assert body["validation"]["estimatedTimeMs"] == 3000
    assert sessions.opened == 0


def test_validation_failure_is_a_client_error(client):
    response = client.post("/capture", json={"url": "https://example.com", "steps": [{"type": "fill", "target": "#q"}]})

    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "VALIDATION_FAILED"
    assert body["recovery"]["action"] == "modify"


def test_invalid_url_is_a_client_error(client, sessions):
    response = client.post("/capture", json={"url": "mailto:someone@example.com"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_URL"
    assert sessions.backend.calls == []
    assert sessions.backend.closed is True


def test_extract(client, sessions):
    response = client.post("/extract", json={"url": "https://example.com"})

    assert response.status_code == 200
    body = response.json()
    assert body["extraction"]["nodeCount"] == 1
    assert body["extraction"]["html"]["truncated"] is False
    assert body["content"][0]["text"].startswith("✓ DOM extracted successfully")


def test_websocket_ping(client):
    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json()["message"] == "Connected"
        ws.send_json({"type": "PING"})
        assert ws.receive_json() == {"type": "PONG"}
        ws.send_json({"type": "HELLO"})
        assert ws.receive_json()["level"] == "warn"


def test_cors_origins_are_read_from_the_environment(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", "https://dash.example.com, http://localhost:3000,")

    assert Settings.from_env().cors_origins == ["https://dash.example.com", "http://localhost:3000"]


def test_cors_is_off_unless_origins_are_configured(client, monkeypatch):
    monkeypatch.delenv("CORS_ORIGINS", raising=False)

    assert Settings.from_env().cors_origins == []
    response = client.get("/health", headers={"Origin": "http://localhost:5173"})
    assert "access-control-allow-origin" not in response.headers
