"""
Moorage - Setup API Routes
============================
HTTP endpoints for operating the gateway from the setup page.

Route groups:
    /setup/api/login           - Exchange the setup password for an auth cookie
    /setup/api/status          - Supervisor and terminal status
    /setup/api/start|stop|...  - Gateway lifecycle control
    /setup/api/logs            - Cursor-based gateway log polling
    /setup/api/token|config    - Current gateway token and config document

All routes except /login require the setup password (see auth.py).
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from console.auth import SetupAuth, require_auth
from gateway.supervisor import GatewaySupervisor
from gateway.terminal import TerminalMultiplexer

logger = logging.getLogger("moorage.console")


# =============================================================================
# Request/Response Models (Pydantic)
# =============================================================================

class LoginRequest(BaseModel):
    """Login with the setup password."""
    password: str = Field(..., description="Setup password")

class ActionResponse(BaseModel):
    """Outcome of a lifecycle action."""
    ok: bool
    message: str


# =============================================================================
# Router Factory
# =============================================================================

def create_router(
    auth: SetupAuth,
    supervisor: GatewaySupervisor,
    multiplexer: TerminalMultiplexer,
) -> APIRouter:
    """
    Create and configure the setup API router.

    Args:
        auth:        Setup password check.
        supervisor:  Owns the gateway process.
        multiplexer: Terminal session registry (for status only).

    Returns:
        Configured APIRouter with all endpoints registered.
    """
    router = APIRouter(prefix="/setup/api")

    # Shorthand for the auth dependency
    authed = Depends(require_auth(auth))

    async def _run_action(name: str, action) -> dict | JSONResponse:
        try:
            return await action()
        except (OSError, ValueError) as e:
            logger.error("Gateway %s failed: %s", name, e)
            return JSONResponse(
                status_code=500,
                content={"ok": False, "message": f"Gateway {name} failed: {e}"},
            )

    # =========================================================================
    # AUTH ROUTES - No authentication required
    # =========================================================================

    @router.post("/login")
    async def login(req: LoginRequest, response: Response):
        """Check the password and set the auth cookie used by the browser."""
        if not auth.verify(req.password):
            raise HTTPException(status_code=401, detail="Invalid password")
        response.set_cookie(
            auth.cookie_name,
            req.password,
            max_age=auth.cookie_max_age,
            httponly=True,
            samesite="lax",
        )
        return {"ok": True, "message": "Logged in"}

    # =========================================================================
    # GATEWAY CONTROL ROUTES - Requires authentication
    # =========================================================================

    @router.get("/status", dependencies=[authed])
    async def get_status():
        """Supervisor status plus the number of open terminal sessions."""
        return {
            "gateway": supervisor.status,
            "terminals": {"active": multiplexer.active_count},
            "configured": supervisor.store.exists(),
        }

    @router.post("/start", dependencies=[authed], response_model=ActionResponse)
    async def start_gateway():
        """Start the gateway (no-op if it is already running)."""
        return await _run_action("start", supervisor.start)

    @router.post("/stop", dependencies=[authed], response_model=ActionResponse)
    async def stop_gateway():
        """Stop the gateway gracefully."""
        return await supervisor.stop()

    @router.post("/restart", dependencies=[authed], response_model=ActionResponse)
    async def restart_gateway():
        """Stop then start, re-running config preparation."""
        return await _run_action("restart", supervisor.restart)

    @router.post("/reset", dependencies=[authed], response_model=ActionResponse)
    async def reset_gateway():
        """Stop the gateway and delete its config document."""
        return await supervisor.reset()

    # =========================================================================
    # DATA ROUTES - Requires authentication
    # =========================================================================

    @router.get("/logs", dependencies=[authed])
    async def get_logs(since: int = Query(0, ge=0, description="Return entries with id > since")):
        """Buffered gateway output newer than `since`."""
        return supervisor.get_recent_logs(since)

    @router.get("/token", dependencies=[authed])
    async def get_token():
        return {"token": supervisor.token}

    @router.get("/config", dependencies=[authed])
    async def get_config():
        """The persisted gateway config document."""
        if not supervisor.store.exists():
            raise HTTPException(status_code=404, detail="Gateway is not configured yet")
        try:
            return supervisor.store.load()
        except ValueError as e:
            raise HTTPException(status_code=500, detail=f"Config document is invalid: {e}")

    return router
