import threading

import httpx
import pytest
from fastapi import FastAPI, Request, WebSocket
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from websockets.sync.server import serve

from gateway.proxy import GatewayProxy


class _Body(httpx.AsyncByteStream):
    """Unread response body, the way a real upstream hands it over."""

    def __init__(self, data: bytes):
        self._data = data

    async def __aiter__(self):
        yield self._data


def _proxy_app(proxy: GatewayProxy) -> FastAPI:
    app = FastAPI()

    @app.websocket("/{path:path}")
    async def ws_catch_all(websocket: WebSocket, path: str):
        await proxy.forward_websocket(websocket)

    @app.api_route("/{path:path}", methods=["GET", "POST"])
    async def catch_all(request: Request, path: str):
        return await proxy.forward(request)

    return app


def _recording_handler(seen: list, status: int = 200, body: bytes = b'{"ok": true}', headers=None):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status, headers=headers or [], stream=_Body(body))

    return handler


def test_current_token_replaces_caller_credential():
    seen = []
    token = {"value": "tok-1"}
    handler = _recording_handler(
        seen,
        headers=[("set-cookie", "a=1"), ("set-cookie", "b=2"), ("x-upstream", "yes")],
    )

    proxy = GatewayProxy(18789, lambda: token["value"], transport=httpx.MockTransport(handler))
    client = TestClient(_proxy_app(proxy))

    r = client.get(
        "/openclaw/api/status?password=secret&x=1&x=2",
        headers={"Authorization": "Bearer caller-token", "X-Forwarded-For": "10.0.0.1"},
    )
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert r.headers.get_list("set-cookie") == ["a=1", "b=2"]
    assert r.headers["x-upstream"] == "yes"

    upstream = seen[-1]
    assert upstream.headers["authorization"] == "Bearer tok-1"
    assert upstream.url.path == "/openclaw/api/status"
    assert "password" not in upstream.url.params
    assert upstream.url.params.get_list("x") == ["1", "2"]
    assert upstream.headers["x-forwarded-for"].startswith("10.0.0.1, ")
    assert upstream.headers["x-forwarded-proto"] == "http"

    # The accessor is consulted on every request
    token["value"] = "tok-2"
    client.get("/anything")
    assert seen[-1].headers["authorization"] == "Bearer tok-2"

    # No caller credential at all still gets one
    client.get("/anything", headers={})
    assert seen[-1].headers["authorization"] == "Bearer tok-2"


def test_request_body_is_forwarded():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            headers={"content-type": "application/json"},
            stream=_Body(request.content),
        )

    proxy = GatewayProxy(18789, lambda: "t", transport=httpx.MockTransport(handler))
    client = TestClient(_proxy_app(proxy))

    r = client.post("/hooks/agent", json={"message": "hi"})
    assert r.status_code == 201
    assert r.json() == {"message": "hi"}
    assert seen[-1].method == "POST"


def test_encoded_path_reaches_gateway_unchanged():
    seen = []
    proxy = GatewayProxy(18789, lambda: "t", transport=httpx.MockTransport(_recording_handler(seen)))
    client = TestClient(_proxy_app(proxy))

    r = client.get("/files/a%2Fb%3Fc?password=secret&x=1")
    assert r.status_code == 200
    assert seen[-1].url.raw_path == b"/files/a%2Fb%3Fc?x=1"


def test_console_cookie_is_not_forwarded():
    seen = []
    proxy = GatewayProxy(
        18789,
        lambda: "t",
        transport=httpx.MockTransport(_recording_handler(seen)),
        cookie_name="moorage_auth",
    )
    client = TestClient(_proxy_app(proxy))

    client.get("/openclaw", headers={"Cookie": "theme=dark; moorage_auth=secret; lang=en"})
    assert seen[-1].headers["cookie"] == "theme=dark; lang=en"

    client.get("/openclaw", headers={"Cookie": "moorage_auth=secret"})
    assert "cookie" not in seen[-1].headers


def test_unreachable_gateway_returns_bad_gateway(free_port):
    proxy = GatewayProxy(free_port, lambda: "t")
    client = TestClient(_proxy_app(proxy))

    r = client.get("/openclaw")
    assert r.status_code == 502
    body = r.json()
    assert set(body) == {"error", "message", "details"}
    assert body["error"] == "Bad Gateway"
    assert body["message"] == "Gateway is not available"


@pytest.fixture
def echo_gateway(free_port):
    """WebSocket server on `free_port` that greets, then echoes every frame."""
    handshakes = []

    def handler(connection):
        handshakes.append(connection.request)
        connection.send("hello")
        for message in connection:
            connection.send(message)

    with serve(handler, "127.0.0.1", free_port, subprotocols=["openclaw.v1"]) as server:
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        yield free_port, handshakes
    thread.join(timeout=5)


def test_websocket_gets_token_and_relays_frames(echo_gateway):
    port, handshakes = echo_gateway
    proxy = GatewayProxy(port, lambda: "tok-ws", cookie_name="moorage_auth")
    client = TestClient(_proxy_app(proxy))

    with client.websocket_connect(
        "/ws/a%2Fb?password=secret&room=1",
        subprotocols=["openclaw.v1"],
        headers={"Authorization": "Bearer caller-token", "Cookie": "moorage_auth=secret; theme=dark"},
    ) as ws:
        assert ws.accepted_subprotocol == "openclaw.v1"
        assert ws.receive_text() == "hello"
        ws.send_text("ping")
        assert ws.receive_text() == "ping"
        ws.send_bytes(b"\x00\x01")
        assert ws.receive_bytes() == b"\x00\x01"

    request = handshakes[-1]
    assert request.headers["Authorization"] == "Bearer tok-ws"
    assert request.headers.get_all("Authorization") == ["Bearer tok-ws"]
    assert request.headers["Cookie"] == "theme=dark"
    assert request.path == "/ws/a%2Fb?room=1"


def test_websocket_to_unreachable_gateway_is_closed(free_port):
    proxy = GatewayProxy(free_port, lambda: "t")
    client = TestClient(_proxy_app(proxy))

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws"):
            pass
    assert exc_info.value.code == 1011
