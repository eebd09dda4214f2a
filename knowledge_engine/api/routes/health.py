"""Health check endpoints for Kubernetes probes."""

from datetime import UTC, datetime

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel

from knowledge_engine.api.deps import AppSettings

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str
    checks: dict | None = None


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


@router.get("/health/live", response_model=HealthResponse)
async def liveness(settings: AppSettings):
    """Kubernetes liveness probe.

    Returns 200 if the process is alive.
    """
    return HealthResponse(status="alive", timestamp=_timestamp(), version=settings.app_version)


@router.get("/health/ready", response_model=HealthResponse)
async def readiness(request: Request, settings: AppSettings):
    """Kubernetes readiness probe.

    Returns 200 if the database and Qdrant both answer. Embedding and
    reranking models are not checked; they degrade rather than fail.
    """
    engine = getattr(request.app.state, "engine", None)
    checks = {"database": "not initialized", "qdrant": "not initialized"}
    all_healthy = False

    if engine is not None and engine.started:
        db_ok = await engine.database.ping()
        qdrant_ok = await engine.vector_store.ping()
        checks = {
            "database": "healthy" if db_ok else "unhealthy",
            "qdrant": "healthy" if qdrant_ok else "unhealthy",
        }
        all_healthy = db_ok and qdrant_ok

    if not all_healthy:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "checks": checks},
        )

    return HealthResponse(
        status="ready", timestamp=_timestamp(), version=settings.app_version, checks=checks
    )


@router.get("/health/startup", response_model=HealthResponse)
async def startup(request: Request, settings: AppSettings):
    """Kubernetes startup probe.

    Returns 200 once the knowledge engine has initialized.
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None or not engine.started:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "starting", "message": "Initialization in progress"},
        )

    return HealthResponse(status="started", timestamp=_timestamp(), version=settings.app_version)
