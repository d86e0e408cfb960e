"""
Moorage - FastAPI Application
================================
Creates the single FastAPI application that owns the inbound listener.

Responsibilities:
    - Initialize all manager instances (auth, supervisor, proxy, terminals,
      websocket hub) and store them on app.state
    - Register routes in an order that lets the catch-all proxy come last
    - Start the gateway on boot when it is already configured, and tear
      everything down on shutdown

Route order (first match wins):
    /health*              -> health.py
    /setup/api/*          -> routes.py
    /setup/api/logs/ws    -> live gateway log socket
    /onboard/ws, /lite/ws -> terminal sessions
    /{anything} (ws)      -> gateway WebSocket proxy
    /{anything} (http)    -> gateway HTTP proxy
"""

import asyncio
import logging
import os
import shlex
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect

from console.auth import SetupAuth
from console.config import ConfigManager
from console.health import create_health_router
from console.routes import create_router
from console.websocket import WebSocketManager
from gateway.proxy import GatewayProxy, error_response
from gateway.supervisor import GatewaySupervisor
from gateway.terminal import TerminalMultiplexer

logger = logging.getLogger("moorage.console")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

# WebSocket close code: try again later
WS_TRY_AGAIN_LATER = 1013
WS_POLICY_VIOLATION = 1008


def create_app(project_dir: str | None = None, settings: dict | None = None) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    Args:
        project_dir: Root directory of the Moorage project.
                     If None, auto-detected from this file's location.
        settings:    Pre-loaded settings (tests pass these directly).
                     If None, loaded through ConfigManager.

    Returns:
        Configured FastAPI application ready to run with uvicorn.

    Raises:
        ValueError: If no setup password is configured.
    """
    # -- Resolve settings ------------------------------------------------------
    if project_dir is None:
        project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    if settings is None:
        settings = ConfigManager(project_dir).load()
    if settings.get("_config_error"):
        logger.warning("config.yaml could not be read, using defaults: %s", settings["_config_error"])

    auth_settings = settings["auth"]
    gateway_settings = settings["gateway"]
    terminal_settings = settings["terminal"]

    # -- Initialize managers ---------------------------------------------------
    auth = SetupAuth(
        auth_settings.get("password", ""),
        cookie_name=auth_settings.get("cookie_name", "moorage_auth"),
        cookie_max_age=int(auth_settings.get("cookie_max_age", 86400)),
    )
    ws_manager = WebSocketManager()
    supervisor = GatewaySupervisor(settings, ws_manager)
    proxy = GatewayProxy(supervisor.port, lambda: supervisor.token, cookie_name=auth.cookie_name)
    multiplexer = TerminalMultiplexer(
        auth.is_authorized,
        {
            "/onboard/ws": _argv(terminal_settings["onboard_command"]),
            "/lite/ws": _argv(terminal_settings["shell"]),
        },
        env={
            "HOME": supervisor.state_dir,
            "OPENCLAW_STATE_DIR": supervisor.state_dir,
            "OPENCLAW_WORKSPACE_DIR": supervisor.workspace_dir,
            "OPENCLAW_CONFIG_PATH": supervisor.store.path,
        },
        cwd=supervisor.workspace_dir,
        cols=int(terminal_settings.get("cols", 120)),
        rows=int(terminal_settings.get("rows", 30)),
        paste_delay=float(terminal_settings.get("paste_delay_ms", 5)) / 1000.0,
    )

    # -- Lifespan --------------------------------------------------------------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        autostart_task = None
        if gateway_settings.get("autostart", True) and supervisor.store.exists():
            logger.info("Gateway config found, starting gateway...")
            autostart_task = asyncio.create_task(_autostart(supervisor))
        elif not supervisor.store.exists():
            logger.info("Gateway is not configured yet, waiting for setup")

        yield

        logger.info("Shutting down...")
        await multiplexer.close_all()
        await supervisor.close()
        if autostart_task is not None:
            await asyncio.gather(autostart_task, return_exceptions=True)
        await proxy.aclose()

    # -- Create FastAPI app ----------------------------------------------------
    app = FastAPI(
        title="Moorage",
        description="Control plane for a supervised OpenClaw gateway",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # -- Store managers on app state -------------------------------------------
    app.state.settings = settings
    app.state.auth = auth
    app.state.ws_manager = ws_manager
    app.state.supervisor = supervisor
    app.state.proxy = proxy
    app.state.multiplexer = multiplexer

    # -- Register API routes ---------------------------------------------------
    app.include_router(create_health_router(supervisor))
    app.include_router(create_router(auth, supervisor, multiplexer))

    # -- Live log WebSocket ----------------------------------------------------
    @app.websocket("/setup/api/logs/ws")
    async def logs_websocket(websocket: WebSocket):
        """Live gateway log lines and status changes for the setup page."""
        if not auth.is_authorized(websocket):
            await websocket.close(code=WS_POLICY_VIOLATION)
            return
        await ws_manager.connect(websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)

    # -- Terminal WebSockets ---------------------------------------------------
    for path in multiplexer.commands:
        app.add_api_websocket_route(path, multiplexer.handle)

    # -- Gateway proxy (must stay last) ----------------------------------------
    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        if not auth.is_authorized(websocket):
            await websocket.close(code=WS_POLICY_VIOLATION)
            return
        if not supervisor.is_running:
            await websocket.close(code=WS_TRY_AGAIN_LATER)
            return
        await proxy.forward_websocket(websocket)

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy_http(request: Request, path: str):
        if not auth.is_authorized(request):
            return error_response(401, "Unauthorized", "Setup password required")
        if not supervisor.is_running:
            return error_response(
                503, "Service Unavailable", "Gateway is not running", supervisor.state
            )
        return await proxy.forward(request)

    return app


async def _autostart(supervisor: GatewaySupervisor) -> None:
    try:
        result = await supervisor.start()
    except (OSError, ValueError) as e:
        logger.error("Gateway failed to start: %s", e)
        return
    if not result["ok"]:
        logger.error("Gateway failed to start: %s", result["message"])


def _argv(value) -> list[str]:
    """Accept either an argv list or a shell-style string from config.yaml."""
    if isinstance(value, str):
        return shlex.split(value)
    return list(value)
