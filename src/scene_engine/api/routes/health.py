"""Health check endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel
from sqlalchemy import text

from scene_engine.api.deps import PipelineDep
from scene_engine.config import settings
from scene_engine.db.session import engine
from scene_engine.logging import get_logger

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    components: dict[str, str] | None = None


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    database: bool
    provider: bool
    rate_limiters: dict[str, float] | None = None


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check",
    description="Basic health check endpoint that verifies the API is running.",
)
def health_check() -> HealthResponse:
    """Basic health check - is the API up?"""
    from scene_engine import __version__

    return HealthResponse(
        status="healthy",
        version=__version__,
        components={
            "generation_provider": settings.generation_provider,
            "task_backend": settings.task_backend,
        },
    )


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    summary="Readiness check",
    description="Readiness check that verifies the database and generation provider.",
)
async def readiness_check(pipeline: PipelineDep) -> ReadinessResponse:
    """Readiness check including dependencies."""
    database_ok = False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            database_ok = True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))

    provider_ok = await pipeline.gateway.provider.health_check()

    return ReadinessResponse(
        ready=database_ok and provider_ok,
        database=database_ok,
        provider=provider_ok,
        rate_limiters={s.name: s.current_delay_ms for s in pipeline.gateway.limiters.all_stats()},
    )


@router.get(
    "/health/live",
    status_code=status.HTTP_200_OK,
    summary="Liveness check",
    description="Simple liveness check for Kubernetes.",
)
async def liveness_check() -> dict[str, str]:
    """Kubernetes liveness check - is the process alive?"""
    return {"status": "alive"}
