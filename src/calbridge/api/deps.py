"""FastAPI dependencies."""

from __future__ import annotations

from fastapi import Request

from calbridge.service import BridgeService


def get_service(request: Request) -> BridgeService:
    """Return the service attached to the app at startup (or by a test)."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise RuntimeError("BridgeService not initialized")
    return service
