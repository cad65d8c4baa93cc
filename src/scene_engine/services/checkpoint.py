"""Checkpoints and resume.

Progress is never stored separately: a checkpoint is derived from the
persisted per-scene step fields, so whatever was committed before a crash
is exactly what a resume skips.
"""

from typing import TYPE_CHECKING
from uuid import UUID

from scene_engine.domain.enums import (
    CheckpointStatus,
    ResumeStatus,
    RetryStatus,
    SceneStatus,
    Stage,
    StageKind,
    StageOutcome,
    StepStatus,
)
from scene_engine.domain.models import Checkpoint, ResumeResult, RetryOptions
from scene_engine.domain.state_machine import STAGE_SPECS, is_active, kinds_through
from scene_engine.errors import ConcurrencyConflict
from scene_engine.logging import get_logger

if TYPE_CHECKING:
    from scene_engine.services.pipeline import PipelineController

logger = get_logger(__name__)


class CheckpointCoordinator:
    """Reads checkpoints and resumes interrupted or partially failed stages."""

    def __init__(self, pipeline: "PipelineController") -> None:
        self.pipeline = pipeline

    def get_checkpoint(self, job_id: UUID) -> Checkpoint:
        """Derive the job's checkpoint from its scenes."""
        pipeline = self.pipeline
        job = pipeline.jobs.get(job_id)
        stage = Stage(job.stage)
        kind = pipeline.kind_for(job)
        scenes = pipeline.registry.list_scenes(job_id)
        active = is_active(stage)
        running = active and pipeline.is_running(job_id)

        completed: list[UUID] = []
        failed: list[UUID] = []
        excluded: list[UUID] = []
        if kind is not None:
            field = STAGE_SPECS[kind].step_field
            for scene in scenes:
                if scene.excluded:
                    excluded.append(scene.id)
                elif getattr(scene, field) == StepStatus.COMPLETED:
                    completed.append(scene.id)
                elif getattr(scene, field) == StepStatus.FAILED:
                    failed.append(scene.id)
        total = len(scenes) - len(excluded)

        # A done stage whose scenes are not all complete (a failed
        # regeneration) is reported and resumed like a partial failure
        settled = kind is not None and stage in (STAGE_SPECS[kind].done, STAGE_SPECS[kind].partial)
        fully_done = (
            kind is not None
            and stage == STAGE_SPECS[kind].done
            and pipeline.registry.stage_outcome(job_id, kind) == StageOutcome.COMPLETED
        )

        if active:
            status = CheckpointStatus.PROCESSING
        elif stage == Stage.FAILED:
            status = CheckpointStatus.FAILED
        elif fully_done:
            status = CheckpointStatus.COMPLETED
        elif settled:
            status = CheckpointStatus.FAILED
        else:
            status = CheckpointStatus.PAUSED

        timestamps = [t for t in (job.updated_at, job.created_at) if t is not None]
        timestamps.extend(s.updated_at or s.created_at for s in scenes if s.updated_at or s.created_at)

        can_resume = not running and (active or (settled and not fully_done))

        return Checkpoint(
            job_id=job.id,
            stage=stage,
            kind=kind,
            status=status,
            total_count=total,
            completed_count=len(completed),
            failed_count=len(failed),
            completed_scene_ids=completed,
            failed_scene_ids=failed,
            excluded_scene_ids=excluded,
            last_updated=max(timestamps) if timestamps else None,
            can_resume=can_resume,
        )

    def resume(self, job_id: UUID, skip_failed: bool = False) -> ResumeResult:
        """Continue the job's current stage from its first unfinished scene.

        Completed scenes are skipped. Failed scenes are re-run, or with
        ``skip_failed`` excluded from stage completion and the final video.
        Failed scenes left behind in a done stage are re-run through the
        retry path.

        Raises:
            ConcurrencyConflict: If work for the job is still in flight.
        """
        pipeline = self.pipeline
        with pipeline.lock:
            job = pipeline.jobs.get(job_id)
            stage = Stage(job.stage)
            if is_active(stage) and pipeline.is_running(job_id):
                raise ConcurrencyConflict(job.user_id, job.id)

            retry_instead = False
            if stage == Stage.SCENARIO_GENERATING:
                task, params, remaining, first = "scenario", {}, 0, None
            else:
                kind = pipeline.kind_for(job)
                if kind is None:
                    return ResumeResult(
                        job_id=job_id,
                        status=ResumeStatus.NOTHING_TO_RESUME,
                        message=f"No stage to resume while the job is {stage}",
                    )
                spec = STAGE_SPECS[kind]
                if stage == spec.done:
                    if pipeline.registry.stage_outcome(job_id, kind) == StageOutcome.COMPLETED:
                        return ResumeResult(
                            job_id=job_id,
                            status=ResumeStatus.ALREADY_COMPLETED,
                            message=f"Stage {kind} is already complete",
                        )
                    if skip_failed:
                        return self._exclude_failed(job_id, stage, kind)
                    retry_instead = True
                elif stage == Stage.SCENE_REGENERATING:
                    targets = [
                        s
                        for s in pipeline.registry.list_scenes(job_id)
                        if s.status in (SceneStatus.REGENERATING, SceneStatus.GENERATING)
                    ]
                    task = "regenerate"
                    params = {"scene_ids": [str(s.id) for s in targets]}
                else:
                    failed = pipeline.registry.failed_scenes(job_id, *kinds_through(kind))
                    failed_ids = [s.id for s in failed if not s.excluded]
                    if skip_failed:
                        pipeline.registry.set_excluded(failed_ids, True)
                    else:
                        for scene_id in failed_ids:
                            pipeline.registry.requeue(scene_id, spec)
                    if stage == spec.partial:
                        pipeline.advance(job_id, spec.generating, expected=stage, error_message=None)
                    targets = [
                        s
                        for s in pipeline.registry.list_scenes(job_id, include_excluded=False)
                        if getattr(s, spec.step_field) != StepStatus.COMPLETED
                    ]
                    task = "stage"
                    params = {"kind": str(kind)}
                if not retry_instead:
                    remaining = len(targets)
                    first = min((s.scene_order for s in targets), default=None)

        if retry_instead:
            return self._retry_unfinished(job_id, stage)

        logger.info(
            "job_resumed",
            job_id=str(job_id),
            stage=str(stage),
            skip_failed=skip_failed,
            remaining=remaining,
        )
        pipeline.submit(task, job_id, **params)
        return ResumeResult(
            job_id=job_id,
            status=ResumeStatus.RESUMED,
            resumed_from_index=first,
            remaining_count=remaining,
            message=f"Resumed {stage} with {remaining} scenes remaining",
        )

    def _exclude_failed(self, job_id: UUID, stage: Stage, kind: StageKind) -> ResumeResult:
        registry = self.pipeline.registry
        failed = [s for s in registry.failed_scenes(job_id, *kinds_through(kind)) if not s.excluded]
        registry.set_excluded([s.id for s in failed], True)
        logger.info("failed_scenes_excluded", job_id=str(job_id), stage=str(stage), scenes=len(failed))
        return ResumeResult(
            job_id=job_id,
            status=ResumeStatus.RESUMED,
            resumed_from_index=None,
            remaining_count=0,
            message=f"Excluded {len(failed)} failed scenes from {stage}",
        )

    def _retry_unfinished(self, job_id: UUID, stage: Stage) -> ResumeResult:
        result = self.pipeline.retry_failed(job_id, RetryOptions(include_pending=True))
        if result.status == RetryStatus.NO_FAILED_SCENES:
            return ResumeResult(
                job_id=job_id,
                status=ResumeStatus.NOTHING_TO_RESUME,
                message=result.message,
            )
        return ResumeResult(
            job_id=job_id,
            status=ResumeStatus.RESUMED,
            resumed_from_index=min((s.order for s in result.failed_scenes), default=None),
            remaining_count=result.retrying_count,
            message=f"Resumed {stage} by retrying {result.retrying_count} scenes",
        )
