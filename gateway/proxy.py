"""
Moorage - Gateway Reverse Proxy
==================================
Forwards HTTP requests and WebSocket connections to the gateway listening
on loopback, injecting the current gateway token on the way through.

Callers authenticate to the console, never to the gateway: whatever
Authorization header they sent is dropped and replaced with
`Bearer <token>`, where the token is read from the accessor on every
request.

Bodies are streamed in both directions; nothing is buffered or inspected.
Paths are forwarded exactly as received (percent-escapes intact), and the
console's own session cookie is removed from the Cookie header.

Error payloads always share one shape:
    {"error": "Bad Gateway", "message": "...", "details": "..."}
"""

import asyncio
import logging
from typing import Callable

import httpx
from fastapi import Request, WebSocket
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketDisconnect, WebSocketState
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

logger = logging.getLogger("moorage.proxy")

# Connection-scoped headers (RFC 7230 section 6.1) plus the ones we rewrite.
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})
REQUEST_DROP_HEADERS = HOP_BY_HOP_HEADERS | {"host", "authorization"}

# Handshake headers the websocket client library generates itself.
WS_DROP_HEADERS = REQUEST_DROP_HEADERS | {
    "origin",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
    "content-length",
}

# Front-door credential; never forwarded.
STRIPPED_QUERY_PARAMS = frozenset({"password"})

WS_OPEN_TIMEOUT = 10.0


def error_response(status_code: int, error: str, message: str, details: str | None = None) -> JSONResponse:
    """Build a proxy error response with the stable {error, message, details} shape."""
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": details},
    )


class GatewayProxy:
    """
    HTTP + WebSocket forwarder bound to one loopback port.

    Args:
        port:        Gateway port on 127.0.0.1.
        get_token:   Zero-argument callable returning the current token (or
                     None). Called once per forwarded request.
        transport:   Optional httpx transport (tests pass a MockTransport).
        cookie_name: Console session cookie to strip from forwarded requests.
    """

    def __init__(
        self,
        port: int,
        get_token: Callable[[], str | None],
        transport: httpx.AsyncBaseTransport | None = None,
        cookie_name: str | None = None,
    ):
        self.port = port
        self.get_token = get_token
        self.cookie_name = cookie_name
        self.base_url = f"http://127.0.0.1:{port}"
        self.ws_base_url = f"ws://127.0.0.1:{port}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=httpx.Timeout(30.0, read=None),
            follow_redirects=False,
            trust_env=False,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- HTTP -----------------------------------------------------------------

    async def forward(self, request: Request):
        """
        Forward one HTTP request and stream the gateway's answer back.

        Returns:
            A StreamingResponse mirroring the upstream status and headers,
            or a 502 JSON error if the gateway cannot be reached.
        """
        headers = self._upstream_headers(
            request.headers.raw,
            REQUEST_DROP_HEADERS,
            client_host=request.client.host if request.client else None,
            scheme=request.url.scheme,
            host=request.headers.get("host"),
        )

        has_body = (
            request.headers.get("content-length", "0") not in ("", "0")
            or "transfer-encoding" in request.headers
        )
        upstream_request = self._client.build_request(
            request.method,
            _raw_path(request),
            params=_filter_query(request),
            headers=headers,
            content=request.stream() if has_body else None,
        )

        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            logger.warning("Proxy %s %s failed: %s", request.method, request.url.path, e)
            return error_response(
                502, "Bad Gateway", "Gateway is not available", str(e) or type(e).__name__
            )

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        # multi_items keeps repeated headers such as Set-Cookie
        response.raw_headers = [
            (key.encode("latin-1"), value.encode("latin-1"))
            for key, value in upstream.headers.multi_items()
            if key.lower() not in HOP_BY_HOP_HEADERS
        ]
        return response

    # -- WebSocket ------------------------------------------------------------

    async def forward_websocket(self, websocket: WebSocket) -> None:
        """
        Open a matching WebSocket to the gateway and pipe frames both ways.

        The client handshake is only accepted once the upstream handshake
        succeeded, so the negotiated subprotocol can be relayed. If the
        gateway refuses, the client connection is closed unaccepted.
        """
        query = httpx.QueryParams(_filter_query(websocket))
        url = self.ws_base_url + _raw_path(websocket) + (f"?{query}" if query else "")

        headers = self._upstream_headers(
            websocket.headers.raw,
            WS_DROP_HEADERS,
            client_host=websocket.client.host if websocket.client else None,
            scheme="https" if websocket.url.scheme == "wss" else "http",
            host=websocket.headers.get("host"),
        )
        offered = [
            p.strip()
            for p in websocket.headers.get("sec-websocket-protocol", "").split(",")
            if p.strip()
        ]

        try:
            upstream = await ws_connect(
                url,
                additional_headers=headers,
                subprotocols=offered or None,
                origin=websocket.headers.get("origin"),
                open_timeout=WS_OPEN_TIMEOUT,
                max_size=None,
            )
        except (OSError, InvalidHandshake, asyncio.TimeoutError) as e:
            logger.warning("Proxy WebSocket %s failed: %s", websocket.url.path, e)
            await websocket.close(code=1011)
            return

        await websocket.accept(subprotocol=upstream.subprotocol)
        tasks = [
            asyncio.create_task(self._client_to_upstream(websocket, upstream)),
            asyncio.create_task(self._upstream_to_client(upstream, websocket)),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await upstream.close()
            if websocket.client_state == WebSocketState.CONNECTED:
                try:
                    await websocket.close()
                except RuntimeError:
                    pass

    async def _client_to_upstream(self, websocket: WebSocket, upstream) -> None:
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
        except (WebSocketDisconnect, ConnectionClosed):
            return

    async def _upstream_to_client(self, upstream, websocket: WebSocket) -> None:
        try:
            async for message in upstream:
                if isinstance(message, str):
                    await websocket.send_text(message)
                else:
                    await websocket.send_bytes(message)
        except (WebSocketDisconnect, ConnectionClosed, RuntimeError):
            return

    # -- Helpers --------------------------------------------------------------

    def _upstream_headers(
        self,
        raw_headers: list[tuple[bytes, bytes]],
        drop: frozenset[str],
        client_host: str | None,
        scheme: str,
        host: str | None,
    ) -> list[tuple[str, str]]:
        """Copy caller headers minus `drop`, then add forwarding + auth headers."""
        headers: list[tuple[str, str]] = []
        forwarded_for = []
        for key, value in raw_headers:
            name = key.decode("latin-1").lower()
            if name in drop or name.startswith("x-forwarded-"):
                if name == "x-forwarded-for":
                    forwarded_for.append(value.decode("latin-1"))
                continue
            text = value.decode("latin-1")
            if name == "cookie" and self.cookie_name:
                text = _strip_cookie(text, self.cookie_name)
                if not text:
                    continue
            headers.append((name, text))

        if client_host:
            forwarded_for.append(client_host)
        if forwarded_for:
            headers.append(("x-forwarded-for", ", ".join(forwarded_for)))
        headers.append(("x-forwarded-proto", scheme))
        if host:
            headers.append(("x-forwarded-host", host))

        token = self.get_token()
        if token:
            headers.append(("authorization", f"Bearer {token}"))
        return headers


def _raw_path(connection) -> str:
    """The request path as sent on the wire, so %2F and %3F survive."""
    raw = connection.scope.get("raw_path")
    if not raw:
        return connection.url.path
    return raw.split(b"?", 1)[0].decode("latin-1")


def _strip_cookie(header: str, name: str) -> str:
    """Remove cookie `name` from a Cookie header value."""
    kept = []
    for pair in header.split(";"):
        pair = pair.strip()
        if pair and pair.split("=", 1)[0].strip() != name:
            kept.append(pair)
    return "; ".join(kept)


def _filter_query(connection) -> list[tuple[str, str]]:
    return [
        (key, value)
        for key, value in connection.query_params.multi_items()
        if key not in STRIPPED_QUERY_PARAMS
    ]
