"""Health check endpoint: dependency checks.

Checks: LLM API key, SQLite DB, ChromaDB collection, agent registry.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

from discovery.config import settings

router = APIRouter()

VERSION = "0.1.0"


class HealthStatus(BaseModel):
    status: str  # "healthy" | "degraded" | "unhealthy"
    version: str
    checks: dict[str, dict]
    dependencies: dict[str, str]  # Simplified view for dashboards
    timestamp: datetime


@router.get("/health", response_model=HealthStatus)
async def health_check() -> HealthStatus:
    """Check all system dependencies."""
    checks: dict[str, dict] = {}
    overall_healthy = True
    has_warning = False

    # 1. LLM API key
    api_key = settings.anthropic_api_key
    if api_key == "test":
        checks["llm_api"] = {"status": "ok", "detail": "test mode"}
    elif api_key:
        checks["llm_api"] = {"status": "ok", "detail": "API key configured"}
    else:
        checks["llm_api"] = {"status": "warning", "detail": "ANTHROPIC_API_KEY not set"}
        has_warning = True

    # 2. SQLite DB
    try:
        from sqlalchemy import text

        from discovery.db.database import engine
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
            wal = conn.execute(text("PRAGMA journal_mode")).fetchone()
            checks["database"] = {"status": "ok", "detail": f"journal_mode={wal[0]}"}
    except Exception as e:
        checks["database"] = {"status": "error", "detail": str(e)}
        overall_healthy = False

    # 3. ChromaDB + agents (only once services are wired)
    from discovery.api.deps import _services
    if _services is None:
        checks["chromadb"] = {"status": "warning", "detail": "services not initialized"}
        checks["agents"] = {"status": "warning", "detail": "services not initialized"}
        has_warning = True
    else:
        try:
            count = _services.store.vectors.count()
            checks["chromadb"] = {"status": "ok", "detail": f"{count} embeddings"}
        except Exception as e:
            checks["chromadb"] = {"status": "error", "detail": str(e)}
            overall_healthy = False

        missing = [a for a in ("planner", "synthesizer") if not _services.agents.is_available(a)]
        if missing:
            checks["agents"] = {"status": "warning", "detail": f"unavailable: {', '.join(missing)}"}
            has_warning = True
        else:
            checks["agents"] = {"status": "ok", "detail": f"{len(_services.agents.list_agents())} agents"}

    dependencies = {name: check["status"] for name, check in checks.items()}

    if not overall_healthy:
        status = "unhealthy"
    elif has_warning:
        status = "degraded"
    else:
        status = "healthy"

    return HealthStatus(
        status=status,
        version=VERSION,
        checks=checks,
        dependencies=dependencies,
        timestamp=datetime.now(timezone.utc),
    )
