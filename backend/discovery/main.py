"""XP Discovery FastAPI Application.

Entry point for the backend server.
"""

from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from discovery.api.deps import set_services
from discovery.api.health import VERSION
from discovery.api.health import router as health_router
from discovery.api.v1.experiences import router as experiences_router
from discovery.api.v1.patterns import router as patterns_router
from discovery.api.v1.search import router as search_router
from discovery.api.v1.sessions import router as sessions_router
from discovery.config import settings
from discovery.db.database import create_db_and_tables
from discovery.middleware.rate_limit import RateLimitMiddleware
from discovery.models.errors import DiscoveryError, RateLimitExceededError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    create_db_and_tables()

    # Graceful: the API still serves /health if wiring fails (e.g. no model download)
    try:
        from discovery.services import build_services

        services = build_services()
        set_services(services)
        pending = await services.store.reindex_pending()
        if pending:
            logger.info("Embedded %d experiences missing vectors", pending)
    except Exception as e:
        logger.warning("Service init skipped (non-fatal): %s", e)

    yield

    set_services(None)


app = FastAPI(
    title="XP Discovery",
    description="Pattern discovery and conversational search over anomalous-experience reports",
    version=VERSION,
    lifespan=lifespan,
)

# Middleware (order matters: first added = outermost)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Caller-Id"],
)
app.add_middleware(RateLimitMiddleware)


@app.exception_handler(DiscoveryError)
async def discovery_exception_handler(request: Request, exc: DiscoveryError):
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(max(1, math.ceil(exc.reset_after)))}
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# Global exception handler: prevent internal details from leaking
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    # Let FastAPI handle HTTPExceptions normally (preserves status codes like 404, 503)
    if isinstance(exc, HTTPException):
        raise exc
    logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error.", "error": "server"},
    )


# Routes
app.include_router(health_router)
app.include_router(search_router)
app.include_router(patterns_router)
app.include_router(experiences_router)
app.include_router(sessions_router)


@app.get("/")
async def root():
    return {"name": "XP Discovery", "version": VERSION, "status": "running"}
