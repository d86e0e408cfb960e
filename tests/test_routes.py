import json
import time

import pytest
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketDenialResponse
from starlette.websockets import WebSocketDisconnect

from console.main import create_app

AUTH = {"Authorization": "Bearer secret"}


def _wait(client, predicate, timeout=15.0):
    deadline = time.monotonic() + timeout
    while True:
        status = client.get("/setup/api/status", headers=AUTH).json()
        if predicate(status):
            return status
        if time.monotonic() > deadline:
            raise AssertionError(f"gateway never reached expected state: {status}")
        time.sleep(0.05)


def test_missing_password_is_fatal(make_settings):
    settings = make_settings()
    settings["auth"]["password"] = ""
    with pytest.raises(ValueError):
        create_app(settings=settings)


def test_health_routes(make_settings):
    with TestClient(create_app(settings=make_settings())) as client:
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

        assert client.get("/health/live").json()["status"] == "alive"

        r = client.get("/health/ready")
        assert r.status_code == 503
        assert r.json()["status"] == "not_ready"


def test_setup_api_requires_password(make_settings):
    with TestClient(create_app(settings=make_settings())) as client:
        assert client.get("/setup/api/status").status_code == 401
        assert client.get("/setup/api/status", headers={"Authorization": "Bearer nope"}).status_code == 401
        assert client.get("/setup/api/status?password=secret").status_code == 200

        assert client.post("/setup/api/login", json={"password": "wrong"}).status_code == 401
        r = client.post("/setup/api/login", json={"password": "secret"})
        assert r.status_code == 200
        assert "moorage_auth" in r.cookies

        # The cookie alone is enough from now on
        status = client.get("/setup/api/status").json()
        assert status["gateway"]["state"] == "stopped"
        assert status["terminals"] == {"active": 0}
        assert status["configured"] is False


def test_idle_endpoints_never_fail(make_settings):
    with TestClient(create_app(settings=make_settings())) as client:
        assert client.get("/setup/api/logs?since=0", headers=AUTH).json() == {"entries": [], "lastId": 0}
        assert client.get("/setup/api/config", headers=AUTH).status_code == 404
        assert client.post("/setup/api/stop", headers=AUTH).json()["ok"] is True


def test_proxy_rejections_use_error_shape(make_settings):
    with TestClient(create_app(settings=make_settings())) as client:
        r = client.get("/openclaw")
        assert r.status_code == 401
        assert set(r.json()) == {"error", "message", "details"}

        r = client.get("/openclaw", headers=AUTH)
        assert r.status_code == 503
        assert r.json()["error"] == "Service Unavailable"


def test_websockets_require_password(make_settings):
    with TestClient(create_app(settings=make_settings())) as client:
        for path in ("/lite/ws", "/setup/api/logs/ws", "/some/gateway/ws"):
            with pytest.raises((WebSocketDenialResponse, WebSocketDisconnect)):
                with client.websocket_connect(path):
                    pass


def test_gateway_lifecycle_through_the_api(make_settings, monkeypatch):
    monkeypatch.setenv("FAKE_GATEWAY_MODE", "serve")
    app = create_app(settings=make_settings())

    with TestClient(app) as client:
        r = client.post("/setup/api/start", headers=AUTH)
        assert r.status_code == 200
        assert r.json()["ok"] is True

        status = _wait(client, lambda s: s["gateway"]["state"] == "ready")
        assert status["configured"] is True
        assert client.get("/health/ready").status_code == 200

        token = client.get("/setup/api/token", headers=AUTH).json()["token"]
        assert token

        config = client.get("/setup/api/config", headers=AUTH).json()
        assert config["gateway"]["auth"] == {"mode": "token", "token": token}

        # Proxied request: caller password swapped for the gateway token
        r = client.post("/hooks/wake?password=secret&id=7", json={"text": "hi"})
        assert r.status_code == 401  # the fake gateway always answers 401
        echoed = r.json()
        assert echoed["seen_auth"] == f"Bearer {token}"
        assert echoed["path"] == "/hooks/wake?id=7"
        assert json.loads(echoed["body"]) == {"text": "hi"}

        logs = client.get("/setup/api/logs?since=0", headers=AUTH).json()
        assert logs["lastId"] >= 1
        later = client.get(f"/setup/api/logs?since={logs['lastId']}", headers=AUTH).json()
        assert all(e["id"] > logs["lastId"] for e in later["entries"])

        assert client.post("/setup/api/stop", headers=AUTH).json()["ok"] is True
        assert client.get("/setup/api/status", headers=AUTH).json()["gateway"]["running"] is False

        assert client.post("/setup/api/reset", headers=AUTH).json()["ok"] is True
        assert client.get("/setup/api/config", headers=AUTH).status_code == 404


def test_start_failure_reports_500(make_settings, tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "openclaw.json").write_text("{not json")
    settings = make_settings(autostart=False)

    with TestClient(create_app(settings=settings)) as client:
        r = client.post("/setup/api/start", headers=AUTH)
        assert r.status_code == 500
        assert r.json()["ok"] is False


def test_autostart_when_configured(make_settings, monkeypatch, tmp_path):
    monkeypatch.setenv("FAKE_GATEWAY_MODE", "serve")
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "openclaw.json").write_text("{}")

    app = create_app(settings=make_settings())
    with TestClient(app) as client:
        _wait(client, lambda s: s["gateway"]["state"] == "ready")
    assert app.state.supervisor.status["running"] is False
