"""
Moorage - Console Package
=========================
The network front door of the Moorage control plane.

This package provides:
- FastAPI application that owns the single inbound listener
- Setup API for starting, stopping and inspecting the gateway
- Health endpoints for the hosting platform
- WebSocket hub for live gateway logs and status changes
- Password check shared by the API, the terminals and the proxy

Architecture:
    main.py      -> FastAPI app creation, lifespan, route registration order
    auth.py      -> Setup password check (header, query or cookie)
    config.py    -> config.yaml + environment overrides
    health.py    -> /health, /health/live, /health/ready
    routes.py    -> /setup/api REST endpoints
    websocket.py -> WebSocket connection manager and message broadcasting
"""
