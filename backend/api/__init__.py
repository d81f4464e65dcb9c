"""API module for HTTP routes and WebSocket handlers.

This module exposes the FastAPI routers for the tree agent backend.
"""

from api.routes import RunServices, router, set_run_services
from api.websocket import websocket_router

__all__ = ["RunServices", "router", "set_run_services", "websocket_router"]
