"""Shared router dependencies: the wired services and the caller identity."""

from __future__ import annotations

from fastapi import Header, HTTPException

from discovery.services import DiscoveryServices

_services: DiscoveryServices | None = None


def set_services(services: DiscoveryServices | None) -> None:
    """Wire services (called from main.py lifespan, or tests)."""
    global _services
    _services = services


def get_services() -> DiscoveryServices:
    if _services is None:
        raise HTTPException(status_code=503, detail="Discovery services not initialized")
    return _services


def get_caller_id(x_caller_id: str | None = Header(default=None)) -> str | None:
    """Authenticated user id, forwarded by the gateway as ``X-Caller-Id``."""
    return x_caller_id or None
