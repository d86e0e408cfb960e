"""
Moorage - Health Routes
=========================
Unauthenticated probes for the hosting platform.

    GET /health        -> always 200 while the console is up
    GET /health/live   -> process liveness with uptime
    GET /health/ready  -> 200 only while the gateway is ready, else 503
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from gateway.supervisor import GatewaySupervisor

SERVICE_NAME = "moorage"


def create_health_router(supervisor: GatewaySupervisor) -> APIRouter:
    router = APIRouter(prefix="/health")
    started = time.monotonic()

    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @router.get("")
    async def health():
        return {"status": "ok", "service": SERVICE_NAME, "timestamp": _now()}

    @router.get("/live")
    async def live():
        return {
            "status": "alive",
            "uptime": round(time.monotonic() - started, 3),
            "timestamp": _now(),
        }

    @router.get("/ready")
    async def ready():
        status = supervisor.status
        if status["ready"]:
            return {
                "status": "ready",
                "gateway": "running",
                "pid": status["pid"],
                "timestamp": _now(),
            }
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "gateway": status["state"],
                "timestamp": _now(),
            },
        )

    return router
