"""Celery task definitions for the scene pipeline.

Each task is a thin wrapper that hands the work to the process-wide
``PipelineController``. The controller records failures on the job itself,
so these tasks do not retry: a re-delivered message would re-run a stage
whose outcome is already persisted.
"""

from typing import Any
from uuid import UUID

from scene_engine.domain.enums import ProviderClass
from scene_engine.logging import get_logger
from scene_engine.services.pipeline import get_pipeline
from scene_engine.worker import celery_app

logger = get_logger(__name__)


def _execute(task: str, job_id: str, **params: Any) -> dict[str, Any]:
    pipeline = get_pipeline()
    pipeline.execute(task, UUID(job_id), params)
    job = pipeline.jobs.get(UUID(job_id))
    return {"job_id": job_id, "stage": job.stage, "error_message": job.error_message}


@celery_app.task(bind=True, name="pipeline.scenario")
def scenario_task(self: Any, job_id: str) -> dict[str, Any]:
    """Generate the scenario and create the job's scenes."""
    logger.info("scenario_task_started", job_id=job_id, task_id=self.request.id)
    return _execute("scenario", job_id)


@celery_app.task(bind=True, name="pipeline.stage")
def stage_task(
    self: Any,
    job_id: str,
    kind: str,
    scene_ids: list[str] | None = None,
    kinds: list[str] | None = None,
    skip_completed: bool = True,
) -> dict[str, Any]:
    """Run one generation stage over the job's scenes."""
    logger.info("stage_task_started", job_id=job_id, kind=kind, task_id=self.request.id)
    return _execute(
        "stage",
        job_id,
        kind=kind,
        scene_ids=scene_ids,
        kinds=kinds,
        skip_completed=skip_completed,
    )


@celery_app.task(bind=True, name="pipeline.regenerate")
def regenerate_task(self: Any, job_id: str, scene_ids: list[str]) -> dict[str, Any]:
    """Regenerate selected scenes and return the job to its origin stage."""
    logger.info(
        "regenerate_task_started",
        job_id=job_id,
        scenes=len(scene_ids),
        task_id=self.request.id,
    )
    return _execute("regenerate", job_id, scene_ids=scene_ids)


@celery_app.task(bind=True, name="pipeline.refresh_rate_limits")
def refresh_rate_limits_task(self: Any) -> dict[str, Any]:  # noqa: ARG001
    """Reload rate limiter parameters from the database (periodic)."""
    limiters = get_pipeline().gateway.limiters
    for provider_class in ProviderClass:
        limiters.get(provider_class)
    limiters.refresh()
    return {s.name: s.current_delay_ms for s in limiters.all_stats()}
