"""Tests for the pipeline controller."""

from uuid import UUID, uuid4

import pytest

from scene_engine.domain.enums import (
    GenerationKind,
    SceneStatus,
    SceneType,
    Stage,
    StageKind,
    StepStatus,
)
from scene_engine.errors import (
    ConcurrencyConflict,
    InvalidTransitionError,
    JobNotFoundError,
    ProviderTransient,
    SceneNotFoundError,
    ValidationError,
)
from scene_engine.services.pipeline import MAX_INPUT_LENGTH, PipelineController


def scene_at(pipeline: PipelineController, job_id: UUID, order: int):
    return next(s for s in pipeline.registry.list_scenes(job_id) if s.scene_order == order)


class TestStartJob:
    """Tests for job creation and scenario generation."""

    def test_scenario_creates_scenes(self, pipeline: PipelineController, started_job) -> None:
        job = pipeline.jobs.get(started_job)
        assert job.stage == Stage.SCENARIO_DONE
        assert job.title == "How volcanoes form"
        assert job.context["style"] == "clean illustration"
        assert job.started_at is not None

        scenes = pipeline.registry.list_scenes(started_job)
        assert [s.scene_order for s in scenes] == [0, 1, 2, 3]
        assert scenes[0].scene_type == SceneType.OPENING
        assert all(s.status == SceneStatus.PENDING for s in scenes)

    def test_rejects_empty_input(self, pipeline: PipelineController) -> None:
        with pytest.raises(ValidationError):
            pipeline.start_job("alice", "   ")

    def test_rejects_oversized_input(self, pipeline: PipelineController) -> None:
        with pytest.raises(ValidationError):
            pipeline.start_job("alice", "x" * (MAX_INPUT_LENGTH + 1))

    def test_one_active_job_per_user(
        self, deferred_pipeline: PipelineController, recording_runner
    ) -> None:
        first = deferred_pipeline.start_job("alice", "Topic one")

        with pytest.raises(ConcurrencyConflict) as exc_info:
            deferred_pipeline.start_job("alice", "Topic two")
        assert exc_info.value.active_job_id == first

        # Other users are unaffected
        deferred_pipeline.start_job("bob", "Topic three")

        recording_runner.run_pending()
        assert deferred_pipeline.jobs.get(first).stage == Stage.SCENARIO_DONE
        deferred_pipeline.start_job("alice", "Topic two")

    def test_scenario_retry_recovers(self, pipeline: PipelineController, provider) -> None:
        provider.fail(GenerationKind.SCENARIO, ProviderTransient("model busy"), times=1)

        job_id = pipeline.start_job("alice", "Tides")

        assert pipeline.jobs.get(job_id).stage == Stage.SCENARIO_DONE

    def test_scenario_failure_fails_job(self, pipeline: PipelineController, provider) -> None:
        provider.fail(GenerationKind.SCENARIO, ProviderTransient("model down"))

        job_id = pipeline.start_job("alice", "Tides")

        job = pipeline.jobs.get(job_id)
        assert job.stage == Stage.FAILED
        assert "Scenario generation failed" in job.error_message
        assert pipeline.registry.list_scenes(job_id) == []
        assert pipeline.get_progress(job_id).stage == Stage.FAILED

    def test_personal_key_pins_every_call(self, pipeline: PipelineController, provider) -> None:
        job_id = pipeline.start_job("carol", "Glaciers", personal_key="carol-own-key")
        pipeline.start_stage(job_id, StageKind.PREVIEWS)

        assert {api_key for _, api_key in provider.calls} == {"carol-own-key"}
        assert pipeline.jobs.get(job_id).encrypted_personal_key != "carol-own-key"


class TestStages:
    """Tests for stage sequencing."""

    def test_full_run_produces_final_video(
        self, pipeline: PipelineController, provider, blobs, started_job, run_until
    ) -> None:
        run_until(pipeline, started_job, Stage.VIDEO_DONE)

        job = pipeline.jobs.get(started_job)
        assert job.stage == Stage.VIDEO_DONE
        assert job.completed_at is not None
        assert job.final_video_url == f"local://jobs/{started_job}/final.mp4"
        assert blobs.open_path(f"jobs/{started_job}/final.mp4").exists()

        for scene in pipeline.registry.list_scenes(started_job):
            assert scene.status == SceneStatus.COMPLETED
            assert scene.media_url and scene.audio_url and scene.subtitle_url
            assert scene.scene_video_url

        assert len(provider.calls_for(GenerationKind.VIDEO_CLIP)) == 1
        assert len(provider.calls_for(GenerationKind.IMAGE)) == 3
        assert len(provider.calls_for(GenerationKind.SPEECH)) == 4
        assert len(provider.calls_for(GenerationKind.SCENE_VIDEO)) == 4
        compose = provider.calls_for(GenerationKind.COMPOSE)
        assert len(compose) == 1
        assert len(compose[0].params["scene_videos"]) == 4

        progress = pipeline.get_progress(started_job)
        assert progress.percent == 100
        assert progress.message == "Video ready (4/4)"
        assert progress.final_video_url.startswith(
            f"http://testserver/artifacts/jobs/{started_job}/final.mp4?expires="
        )

    def test_stage_cannot_be_skipped(self, pipeline: PipelineController, started_job) -> None:
        with pytest.raises(InvalidTransitionError):
            pipeline.start_stage(started_job, StageKind.TTS)
        assert pipeline.jobs.get(started_job).stage == Stage.SCENARIO_DONE

    def test_partial_failure_keeps_siblings(
        self, pipeline: PipelineController, provider, started_job
    ) -> None:
        provider.fail(GenerationKind.IMAGE, ProviderTransient("gpu lost"), match="Illustration 2")

        pipeline.start_stage(started_job, StageKind.PREVIEWS)

        job = pipeline.jobs.get(started_job)
        assert job.stage == Stage.PREVIEWS_PARTIAL_FAILED
        assert job.error_message == "1 of 4 scenes failed"

        failed = scene_at(pipeline, started_job, 2)
        assert failed.status == SceneStatus.FAILED
        assert failed.failed_at == "media"
        assert failed.last_error == "gpu lost"
        others = [s for s in pipeline.registry.list_scenes(started_job) if s.id != failed.id]
        assert all(s.media_status == StepStatus.COMPLETED for s in others)

        with pytest.raises(InvalidTransitionError):
            pipeline.start_stage(started_job, StageKind.TTS)

    def test_provider_timeout_fails_scene(
        self, pipeline: PipelineController, provider, gateway, started_job, run_until
    ) -> None:
        run_until(pipeline, started_job, Stage.PREVIEWS_DONE)
        gateway.timeout_seconds = 0.05
        provider.stall(GenerationKind.SPEECH, 1.0, match="Scene 2 narration")

        pipeline.start_stage(started_job, StageKind.TTS)

        job = pipeline.jobs.get(started_job)
        assert job.stage == Stage.TTS_PARTIAL_FAILED
        assert job.error_message == "1 of 4 scenes failed"

        stalled = scene_at(pipeline, started_job, 2)
        assert stalled.status == SceneStatus.FAILED
        assert stalled.audio_status == StepStatus.FAILED
        assert stalled.failed_at == "tts"
        assert "timed out" in stalled.last_error
        others = [s for s in pipeline.registry.list_scenes(started_job) if s.id != stalled.id]
        assert all(s.audio_status == StepStatus.COMPLETED for s in others)

    def test_content_filter_uses_safe_prompt(
        self, pipeline: PipelineController, provider, started_job
    ) -> None:
        from scene_engine.errors import ProviderContentFiltered

        provider.fail(
            GenerationKind.IMAGE, ProviderContentFiltered("unsafe"), match="Illustration 1", times=1
        )

        pipeline.start_stage(started_job, StageKind.PREVIEWS)

        assert pipeline.jobs.get(started_job).stage == Stage.PREVIEWS_DONE
        prompts = [r.prompt for r in provider.calls_for(GenerationKind.IMAGE)]
        assert any(p.startswith("calm abstract background") for p in prompts)

    def test_composition_failure(
        self, pipeline: PipelineController, provider, started_job, run_until
    ) -> None:
        provider.fail(GenerationKind.COMPOSE, ProviderTransient("renderer down"))

        run_until(pipeline, started_job, Stage.VIDEO_DONE)

        job = pipeline.jobs.get(started_job)
        assert job.stage == Stage.VIDEO_FAILED
        assert job.error_message.startswith("Final composition failed")
        assert job.final_video_url is None

        provider.clear_failures()
        pipeline.resume(started_job)
        assert pipeline.jobs.get(started_job).stage == Stage.VIDEO_DONE

    def test_auto_advance_runs_to_the_end(self, make_controller) -> None:
        controller = make_controller(auto_advance=True)

        job_id = controller.start_job("dave", "Northern lights")

        job = controller.jobs.get(job_id)
        assert job.stage == Stage.VIDEO_DONE
        assert job.final_video_url is not None

    def test_parallel_workers(self, make_controller, run_until, provider) -> None:
        provider.slide_count = 6
        controller = make_controller(workers=3)
        job_id = controller.start_job("erin", "Coral reefs")

        run_until(controller, job_id, Stage.VIDEO_DONE)

        assert controller.jobs.get(job_id).stage == Stage.VIDEO_DONE
        scenes = controller.registry.list_scenes(job_id)
        assert len(scenes) == 7
        assert all(s.video_status == StepStatus.COMPLETED for s in scenes)


class TestSceneEdits:
    """Tests for regeneration and narration edits."""

    def test_regenerate_scene_with_feedback(
        self, pipeline: PipelineController, provider, started_job, run_until
    ) -> None:
        run_until(pipeline, started_job, Stage.PREVIEWS_DONE)
        scene = scene_at(pipeline, started_job, 1)
        old_media = scene.media_url

        pipeline.regenerate_scene(started_job, scene.id, feedback="more lava")

        job = pipeline.jobs.get(started_job)
        assert job.stage == Stage.PREVIEWS_DONE
        assert job.regeneration_origin is None
        scene = pipeline.registry.get_scene(started_job, scene.id)
        assert scene.status == SceneStatus.MEDIA_READY
        assert scene.regenerate_count == 1
        assert scene.media_url == old_media
        assert provider.calls_for(GenerationKind.IMAGE)[-1].prompt.endswith(
            "Revision notes: more lava"
        )

    def test_regenerate_requires_reviewable_stage(
        self, pipeline: PipelineController, started_job
    ) -> None:
        scene = scene_at(pipeline, started_job, 1)
        with pytest.raises(ValidationError):
            pipeline.regenerate_scene(started_job, scene.id)

    def test_regenerate_unknown_scene(
        self, pipeline: PipelineController, started_job, run_until
    ) -> None:
        run_until(pipeline, started_job, Stage.PREVIEWS_DONE)
        with pytest.raises(SceneNotFoundError):
            pipeline.regenerate_scene(started_job, uuid4())
        assert pipeline.jobs.get(started_job).stage == Stage.PREVIEWS_DONE

    def test_regenerate_repairs_last_failed_narration(
        self, pipeline: PipelineController, provider, started_job, run_until
    ) -> None:
        run_until(pipeline, started_job, Stage.PREVIEWS_DONE)
        provider.fail(
            GenerationKind.SPEECH, ProviderTransient("voice busy"), match="Scene 2 narration", times=2
        )
        pipeline.start_stage(started_job, StageKind.TTS)
        assert pipeline.jobs.get(started_job).stage == Stage.TTS_PARTIAL_FAILED

        pipeline.regenerate_scene(started_job, scene_at(pipeline, started_job, 2).id)

        assert pipeline.jobs.get(started_job).stage == Stage.TTS_DONE
        assert scene_at(pipeline, started_job, 2).status == SceneStatus.TTS_READY

    def test_edit_narration(
        self, pipeline: PipelineController, provider, started_job, run_until
    ) -> None:
        run_until(pipeline, started_job, Stage.PREVIEWS_DONE)
        scene = scene_at(pipeline, started_job, 3)

        pipeline.edit_narration(started_job, scene.id, "  Magma rises through the crust.  ")
        pipeline.start_stage(started_job, StageKind.TTS)

        assert pipeline.registry.get_scene(started_job, scene.id).narration == (
            "Magma rises through the crust."
        )
        spoken = [r.prompt for r in provider.calls_for(GenerationKind.SPEECH)]
        assert "Magma rises through the crust." in spoken

    def test_edit_narration_rejected_outside_review(
        self, pipeline: PipelineController, started_job
    ) -> None:
        scene = scene_at(pipeline, started_job, 1)
        with pytest.raises(ValidationError):
            pipeline.edit_narration(started_job, scene.id, "New text")

    def test_edit_narration_rejects_empty_text(
        self, pipeline: PipelineController, started_job, run_until
    ) -> None:
        run_until(pipeline, started_job, Stage.PREVIEWS_DONE)
        scene = scene_at(pipeline, started_job, 1)
        with pytest.raises(ValidationError):
            pipeline.edit_narration(started_job, scene.id, " ")


class TestDeleteJob:
    """Tests for job deletion."""

    def test_delete_removes_job_and_artifacts(
        self, pipeline: PipelineController, blobs, started_job, run_until
    ) -> None:
        run_until(pipeline, started_job, Stage.PREVIEWS_DONE)
        assert blobs.open_path(f"jobs/{started_job}").exists()

        pipeline.delete_job(started_job)

        with pytest.raises(JobNotFoundError):
            pipeline.jobs.get(started_job)
        assert not blobs.open_path(f"jobs/{started_job}").exists()

    def test_delete_running_job_conflicts(
        self, deferred_pipeline: PipelineController, recording_runner
    ) -> None:
        recording_runner.tracks_local_work = False
        job_id = deferred_pipeline.start_job("alice", "Topic")

        with pytest.raises(ConcurrencyConflict):
            deferred_pipeline.delete_job(job_id)
