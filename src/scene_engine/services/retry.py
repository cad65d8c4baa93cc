"""Retrying failed scenes.

Only the selected scenes are touched: completed scenes keep their
artifacts, and a media-only retry leaves narration and video steps alone.
"""

from typing import TYPE_CHECKING, Any
from uuid import UUID

from scene_engine.domain.enums import (
    RetryStatus,
    SceneStatus,
    SceneType,
    Stage,
    StageKind,
    StepStatus,
)
from scene_engine.domain.models import FailedSceneInfo, RetryOptions, RetryResult
from scene_engine.domain.state_machine import STAGE_SPECS, kinds_through
from scene_engine.errors import SceneNotFoundError, ValidationError
from scene_engine.logging import get_logger

if TYPE_CHECKING:
    from scene_engine.db.models import SceneModel
    from scene_engine.services.pipeline import PipelineController

logger = get_logger(__name__)


def _info(scene: "SceneModel", is_retrying: bool) -> FailedSceneInfo:
    return FailedSceneInfo(
        scene_id=scene.id,
        order=scene.scene_order,
        scene_type=SceneType(scene.scene_type),
        failed_at=scene.failed_at,
        error_message=scene.last_error,
        retry_count=scene.retry_count or 0,
        is_retrying=is_retrying,
    )


class RetryCoordinator:
    """Lists failed scenes and schedules retries for them."""

    def __init__(self, pipeline: "PipelineController") -> None:
        self.pipeline = pipeline

    def get_failed_scenes(self, job_id: UUID) -> list[FailedSceneInfo]:
        """Scenes with a failed step plus scenes currently being retried after a failure."""
        self.pipeline.jobs.get(job_id)
        failed = {s.id for s in self.pipeline.registry.failed_scenes(job_id)}
        result = []
        for scene in self.pipeline.registry.list_scenes(job_id):
            if scene.status in (SceneStatus.GENERATING, SceneStatus.REGENERATING):
                if scene.last_error:
                    result.append(_info(scene, is_retrying=True))
            elif scene.id in failed:
                result.append(_info(scene, is_retrying=False))
        return result

    def retry_failed(self, job_id: UUID, options: RetryOptions) -> RetryResult:
        """Re-run failed (and optionally pending) scenes.

        A scene counts as failed when any step up to the current stage kind
        failed. From a partial-failure stage the stage itself is re-entered;
        from PREVIEWS_DONE the scenes go through scene regeneration.

        Raises:
            ValidationError: If the job's stage does not allow retries.
            SceneNotFoundError: If ``options.scene_ids`` names unknown scenes.
            ConcurrencyConflict: If the user has work in flight.
        """
        pipeline = self.pipeline
        with pipeline.lock:
            job = pipeline.jobs.get(job_id)
            stage = Stage(job.stage)
            kind = pipeline.kind_for(job)
            if kind is None or stage not in (STAGE_SPECS[kind].partial, Stage.PREVIEWS_DONE):
                raise ValidationError(f"Failed scenes cannot be retried while the job is {stage}")
            pipeline.ensure_idle(job)
            spec = STAGE_SPECS[kind]

            scenes = pipeline.registry.list_scenes(job_id)
            failed = pipeline.registry.failed_scenes(job_id, *kinds_through(kind))
            candidates = list(failed)
            if options.include_pending:
                failed_ids = {s.id for s in failed}
                candidates += [
                    s
                    for s in scenes
                    if s.id not in failed_ids and getattr(s, spec.step_field) == StepStatus.PENDING
                ]

            if options.scene_ids is not None:
                known = {s.id for s in scenes}
                unknown = [str(i) for i in options.scene_ids if i not in known]
                if unknown:
                    raise SceneNotFoundError(f"Scenes not found in job {job_id}: {', '.join(unknown)}")
                wanted = set(options.scene_ids)
                candidates = [s for s in candidates if s.id in wanted]

            if not candidates:
                return RetryResult(
                    job_id=job_id,
                    status=RetryStatus.NO_FAILED_SCENES,
                    total_failed_count=len(failed),
                    retrying_count=0,
                    message="No failed scenes to retry",
                )

            ids = [s.id for s in candidates]
            for scene_id in ids:
                pipeline.registry.increment_retry_count(scene_id)
            pipeline.registry.set_excluded(ids, False)

            params: dict[str, Any] = {"scene_ids": [str(i) for i in ids]}
            if stage == spec.partial:
                task = "stage"
                kinds = [StageKind.PREVIEWS] if options.media_only else kinds_through(kind)
                params.update(
                    kind=str(kind),
                    kinds=[str(k) for k in kinds],
                    skip_completed=not options.media_only,
                )
                pipeline.advance(
                    job_id,
                    spec.generating,
                    expected=stage,
                    error_message=None,
                    retry_count=(job.retry_count or 0) + 1,
                )
            else:
                task = "regenerate"
                pipeline.advance(
                    job_id,
                    Stage.SCENE_REGENERATING,
                    expected=stage,
                    regeneration_origin=str(stage),
                    retry_count=(job.retry_count or 0) + 1,
                )
            infos = [_info(s, is_retrying=True) for s in candidates]

        logger.info(
            "scenes_retry_scheduled",
            job_id=str(job_id),
            stage=str(stage),
            scenes=len(ids),
            media_only=options.media_only,
        )
        pipeline.submit(task, job_id, **params)
        return RetryResult(
            job_id=job_id,
            status=RetryStatus.PROCESSING,
            total_failed_count=len(failed),
            retrying_count=len(ids),
            failed_scenes=infos,
            message=f"Retrying {len(ids)} scenes",
        )
