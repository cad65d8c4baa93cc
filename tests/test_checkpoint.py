"""Tests for checkpoints and resume."""

from uuid import UUID

import pytest

from scene_engine.domain.enums import (
    CheckpointStatus,
    GenerationKind,
    ResumeStatus,
    SceneStatus,
    Stage,
    StageKind,
    StepStatus,
)
from scene_engine.domain.state_machine import STAGE_SPECS
from scene_engine.errors import ConcurrencyConflict, ProviderTransient
from scene_engine.services.pipeline import PipelineController

PREVIEWS = STAGE_SPECS[StageKind.PREVIEWS]


def scene_at(pipeline: PipelineController, job_id: UUID, order: int):
    return next(s for s in pipeline.registry.list_scenes(job_id) if s.scene_order == order)


@pytest.fixture
def failed_regeneration(pipeline: PipelineController, provider, started_job, run_until) -> UUID:
    """A job back at previews_done after regenerating scene 1 failed."""
    run_until(pipeline, started_job, Stage.PREVIEWS_DONE)
    provider.fail(GenerationKind.IMAGE, ProviderTransient("down"), match="Illustration 1")
    pipeline.regenerate_scene(started_job, scene_at(pipeline, started_job, 1).id)
    provider.clear_failures()
    return started_job


@pytest.fixture
def interrupted_job(deferred_pipeline: PipelineController, recording_runner) -> UUID:
    """A job whose previews worker died after one scene, with another scene mid-flight."""
    job_id = deferred_pipeline.start_job("alice", "How volcanoes form")
    recording_runner.run_pending()
    deferred_pipeline.start_stage(job_id, StageKind.PREVIEWS)
    recording_runner.submitted.clear()

    job = deferred_pipeline.jobs.get(job_id)
    ctx = deferred_pipeline.job_context(job)
    first = scene_at(deferred_pipeline, job_id, 0)
    deferred_pipeline.processor.run(ctx, [first.id], [StageKind.PREVIEWS])
    deferred_pipeline.registry.mark_step_started(scene_at(deferred_pipeline, job_id, 1).id, PREVIEWS)
    return job_id


class TestGetCheckpoint:
    """Tests for checkpoints derived from scene state."""

    def test_interrupted_stage(self, deferred_pipeline: PipelineController, interrupted_job) -> None:
        checkpoint = deferred_pipeline.get_checkpoint(interrupted_job)

        assert checkpoint.stage == Stage.PREVIEWS_GENERATING
        assert checkpoint.kind == StageKind.PREVIEWS
        assert checkpoint.status == CheckpointStatus.PROCESSING
        assert checkpoint.total_count == 4
        assert checkpoint.completed_count == 1
        assert checkpoint.pending_count == 3
        assert checkpoint.completed_scene_ids == [scene_at(deferred_pipeline, interrupted_job, 0).id]
        assert checkpoint.last_updated is not None
        assert checkpoint.can_resume is True

    def test_running_stage_cannot_resume(
        self, deferred_pipeline: PipelineController, recording_runner, interrupted_job
    ) -> None:
        recording_runner.tracks_local_work = False

        checkpoint = deferred_pipeline.get_checkpoint(interrupted_job)

        assert checkpoint.status == CheckpointStatus.PROCESSING
        assert checkpoint.can_resume is False

    def test_completed_stage(self, pipeline: PipelineController, started_job, run_until) -> None:
        run_until(pipeline, started_job, Stage.PREVIEWS_DONE)

        checkpoint = pipeline.get_checkpoint(started_job)

        assert checkpoint.status == CheckpointStatus.COMPLETED
        assert checkpoint.completed_count == 4
        assert checkpoint.can_resume is False

    def test_partial_stage(self, pipeline: PipelineController, provider, started_job) -> None:
        provider.fail(GenerationKind.IMAGE, ProviderTransient("down"), match="Illustration 3")
        pipeline.start_stage(started_job, StageKind.PREVIEWS)

        checkpoint = pipeline.get_checkpoint(started_job)

        assert checkpoint.status == CheckpointStatus.FAILED
        assert checkpoint.failed_scene_ids == [scene_at(pipeline, started_job, 3).id]
        assert checkpoint.can_resume is True

    def test_failed_regeneration_after_done_stage(
        self, pipeline: PipelineController, failed_regeneration
    ) -> None:
        checkpoint = pipeline.get_checkpoint(failed_regeneration)

        assert checkpoint.stage == Stage.PREVIEWS_DONE
        assert checkpoint.status == CheckpointStatus.FAILED
        assert checkpoint.failed_scene_ids == [scene_at(pipeline, failed_regeneration, 1).id]
        assert checkpoint.can_resume is True

    def test_scenario_done_is_paused(self, pipeline: PipelineController, started_job) -> None:
        checkpoint = pipeline.get_checkpoint(started_job)
        assert checkpoint.kind is None
        assert checkpoint.status == CheckpointStatus.PAUSED
        assert checkpoint.can_resume is False


class TestResume:
    """Tests for resuming interrupted and partially failed stages."""

    def test_resume_interrupted_stage_skips_completed(
        self,
        deferred_pipeline: PipelineController,
        recording_runner,
        provider,
        interrupted_job,
    ) -> None:
        result = deferred_pipeline.resume(interrupted_job)

        assert result.status == ResumeStatus.RESUMED
        assert result.resumed_from_index == 1
        assert result.remaining_count == 3

        recording_runner.run_pending()

        assert deferred_pipeline.jobs.get(interrupted_job).stage == Stage.PREVIEWS_DONE
        # The opening clip finished before the interruption and is not redone
        assert len(provider.calls_for(GenerationKind.VIDEO_CLIP)) == 1
        assert len(provider.calls_for(GenerationKind.IMAGE)) == 3

    def test_resume_stale_scenario(
        self, deferred_pipeline: PipelineController, recording_runner
    ) -> None:
        job_id = deferred_pipeline.start_job("alice", "Tides")
        recording_runner.submitted.clear()

        result = deferred_pipeline.resume(job_id)
        assert result.status == ResumeStatus.RESUMED

        recording_runner.run_pending()
        assert deferred_pipeline.jobs.get(job_id).stage == Stage.SCENARIO_DONE

    def test_resume_while_running_conflicts(
        self, deferred_pipeline: PipelineController, recording_runner, interrupted_job
    ) -> None:
        recording_runner.tracks_local_work = False
        with pytest.raises(ConcurrencyConflict):
            deferred_pipeline.resume(interrupted_job)

    def test_resume_partial_reruns_failed(
        self, pipeline: PipelineController, provider, started_job
    ) -> None:
        provider.fail(GenerationKind.IMAGE, ProviderTransient("down"), match="Illustration 2")
        pipeline.start_stage(started_job, StageKind.PREVIEWS)
        provider.clear_failures()

        result = pipeline.resume(started_job)

        assert result.resumed_from_index == 2
        assert result.remaining_count == 1
        assert pipeline.jobs.get(started_job).stage == Stage.PREVIEWS_DONE
        assert scene_at(pipeline, started_job, 2).status == SceneStatus.MEDIA_READY

    def test_resume_skip_failed_excludes_scene(
        self, pipeline: PipelineController, provider, started_job, run_until
    ) -> None:
        provider.fail(GenerationKind.IMAGE, ProviderTransient("down"), match="Illustration 2")
        pipeline.start_stage(started_job, StageKind.PREVIEWS)
        failed_id = scene_at(pipeline, started_job, 2).id

        result = pipeline.resume(started_job, skip_failed=True)

        assert result.remaining_count == 0
        assert pipeline.jobs.get(started_job).stage == Stage.PREVIEWS_DONE
        assert pipeline.get_checkpoint(started_job).excluded_scene_ids == [failed_id]

        run_until(pipeline, started_job, Stage.VIDEO_DONE)

        assert pipeline.jobs.get(started_job).stage == Stage.VIDEO_DONE
        compose = provider.calls_for(GenerationKind.COMPOSE)[0]
        assert str(failed_id) not in compose.params["scene_ids"]
        assert len(compose.params["scene_ids"]) == 3

    def test_nothing_to_resume(self, pipeline: PipelineController, started_job) -> None:
        assert pipeline.resume(started_job).status == ResumeStatus.NOTHING_TO_RESUME

    def test_already_completed(self, pipeline: PipelineController, started_job, run_until) -> None:
        run_until(pipeline, started_job, Stage.TTS_DONE)
        assert pipeline.resume(started_job).status == ResumeStatus.ALREADY_COMPLETED

    def test_resume_failed_regeneration_reruns_scene(
        self, pipeline: PipelineController, failed_regeneration
    ) -> None:
        result = pipeline.resume(failed_regeneration)

        assert result.status == ResumeStatus.RESUMED
        assert result.resumed_from_index == 1
        assert result.remaining_count == 1
        assert pipeline.jobs.get(failed_regeneration).stage == Stage.PREVIEWS_DONE
        assert scene_at(pipeline, failed_regeneration, 1).media_status == StepStatus.COMPLETED
        assert pipeline.get_checkpoint(failed_regeneration).status == CheckpointStatus.COMPLETED

    def test_resume_failed_regeneration_skip_failed(
        self, pipeline: PipelineController, failed_regeneration
    ) -> None:
        result = pipeline.resume(failed_regeneration, skip_failed=True)

        assert result.status == ResumeStatus.RESUMED
        assert result.remaining_count == 0
        checkpoint = pipeline.get_checkpoint(failed_regeneration)
        assert checkpoint.excluded_scene_ids == [scene_at(pipeline, failed_regeneration, 1).id]
        assert checkpoint.status == CheckpointStatus.COMPLETED
