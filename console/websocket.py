"""
Moorage - WebSocket Manager
==============================
Manages WebSocket connections for the live gateway log view.

Message types (server -> client):
    - "log"    : One gateway output line (a log buffer entry)
    - "status" : Supervisor state change (starting/ready/stopped/crash_loop)

Message format:
    {
        "type": "log",
        "data": {"id": 7, "timestamp": "...", "stream": "output", "text": "..."},
        "timestamp": "2026-02-08T12:00:00+00:00"
    }

Usage:
    # In the supervisor, broadcast to all connected clients:
    await ws_manager.send_log(entry)

    # In the WebSocket endpoint:
    @app.websocket("/setup/api/logs/ws")
    async def ws_endpoint(websocket: WebSocket):
        await ws_manager.connect(websocket)
        try:
            while True:
                await websocket.receive_text()  # Keep connection alive
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)
"""

import json
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect


class WebSocketManager:
    """
    Manages multiple WebSocket client connections and message broadcasting.

    All connected clients receive all broadcast messages.

    Attributes:
        active_connections: Set of currently connected WebSocket instances.
    """

    def __init__(self):
        self.active_connections: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection and add it to the active set."""
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)

    async def broadcast(self, message: dict[str, Any]) -> None:
        """
        Send a message to all connected WebSocket clients.

        Automatically adds a timestamp to the message if not present.
        Clients whose send fails are dropped from the active set.

        Args:
            message: Dictionary to send as JSON. Should include 'type' and 'data' keys.
        """
        if "timestamp" not in message:
            message["timestamp"] = datetime.now(timezone.utc).isoformat()

        payload = json.dumps(message, ensure_ascii=False)

        disconnected = set()
        for ws in list(self.active_connections):
            try:
                await ws.send_text(payload)
            except (WebSocketDisconnect, RuntimeError, OSError):
                disconnected.add(ws)

        self.active_connections -= disconnected

    async def send_log(self, entry: dict[str, Any]) -> None:
        """Convenience: broadcast one log buffer entry."""
        await self.broadcast({"type": "log", "data": entry})

    async def send_status(self, status: str, details: dict | None = None) -> None:
        """Convenience: broadcast a supervisor status update."""
        data = {"status": status}
        if details:
            data.update(details)
        await self.broadcast({"type": "status", "data": data})
