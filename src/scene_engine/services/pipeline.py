"""Pipeline controller: the job-level state machine.

The controller is the only component that changes a job's stage. Every
change goes through ``advance``, which validates the transition against
the stage table and applies it with a compare-and-set update.

Request-facing operations (``start_job``, ``start_stage``, ``resume``,
``retry_failed``, ``regenerate_scene``) validate state, move the job into
its generating stage and hand the slow work to a ``TaskRunner``. The
background half runs in ``execute``; any terminal error there is written to
the job so it is visible through ``get_progress``.
"""

import threading
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from scene_engine.adapters.generation import get_generation_provider
from scene_engine.adapters.generation.base import GenerationProvider, GenerationRequest
from scene_engine.adapters.prompts import PromptProvider, TemplatePromptProvider
from scene_engine.adapters.storage import BlobStore, LocalBlobStore
from scene_engine.config import settings
from scene_engine.db.models import JobModel
from scene_engine.db.session import SessionLocal
from scene_engine.domain.enums import GenerationKind, Stage, StageKind, StageOutcome, StepStatus
from scene_engine.domain.models import (
    Checkpoint,
    CredentialContext,
    FailedSceneInfo,
    Progress,
    ResumeResult,
    RetryOptions,
    RetryResult,
)
from scene_engine.domain.state_machine import (
    REGENERATION_KINDS,
    STAGE_SPECS,
    StageSpec,
    is_active,
    next_kind,
    previous_kind,
    spec_for_stage,
    validate_scene_transition,
    validate_transition,
)
from scene_engine.errors import (
    ConcurrencyConflict,
    InvalidTransitionError,
    PipelineFailure,
    ProviderError,
    SceneEngineError,
    ValidationError,
)
from scene_engine.jobs.runner import TaskRunner, get_task_runner
from scene_engine.logging import get_logger, job_log_context
from scene_engine.services.checkpoint import CheckpointCoordinator
from scene_engine.services.credentials import CredentialRotator
from scene_engine.services.encryption import decrypt_secret, encrypt_secret
from scene_engine.services.gateway import ProviderGateway
from scene_engine.services.job_store import JobStore
from scene_engine.services.rate_limiter import RateLimiterRegistry
from scene_engine.services.retry import RetryCoordinator
from scene_engine.services.scenario import ScenarioDocument, parse_scenario
from scene_engine.services.scene_processor import JobContext, SceneProcessor, store_result
from scene_engine.services.scene_registry import SceneRegistry
from scene_engine.utils.async_utils import run_async

logger = get_logger(__name__)

MAX_INPUT_LENGTH = 10_000
MAX_NARRATION_LENGTH = 2_000

_STAGE_MESSAGES = {
    Stage.CHATTING: "Waiting to start",
    Stage.SCENARIO_GENERATING: "Writing the scenario",
    Stage.SCENARIO_DONE: "Scenario ready",
    Stage.PREVIEWS_GENERATING: "Generating scene media",
    Stage.PREVIEWS_DONE: "Scene media ready",
    Stage.PREVIEWS_PARTIAL_FAILED: "Some scene media failed",
    Stage.SCENE_REGENERATING: "Regenerating scenes",
    Stage.TTS_GENERATING: "Generating narration",
    Stage.TTS_DONE: "Narration ready",
    Stage.TTS_PARTIAL_FAILED: "Some narration failed",
    Stage.VIDEO_GENERATING: "Rendering video",
    Stage.VIDEO_DONE: "Video ready",
    Stage.VIDEO_FAILED: "Video rendering failed",
    Stage.FAILED: "Generation failed",
}


def _now() -> datetime:
    return datetime.now(UTC)


class PipelineController:
    """Sequences stages for jobs and enforces one active job per user."""

    def __init__(
        self,
        jobs: JobStore,
        registry: SceneRegistry,
        processor: SceneProcessor,
        gateway: ProviderGateway,
        prompts: PromptProvider,
        blobs: BlobStore,
        runner: TaskRunner,
        auto_advance: bool | None = None,
    ) -> None:
        self.jobs = jobs
        self.registry = registry
        self.processor = processor
        self.gateway = gateway
        self.prompts = prompts
        self.blobs = blobs
        self.runner = runner
        self.auto_advance = settings.auto_advance if auto_advance is None else auto_advance

        # Guards check-then-transition sequences across request threads
        self.lock = threading.RLock()
        self._running: dict[UUID, int] = {}

        self.checkpoints = CheckpointCoordinator(self)
        self.retries = RetryCoordinator(self)
        runner.bind(self.execute)

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    def advance(
        self,
        job_id: UUID,
        target: Stage,
        expected: Stage | None = None,
        **fields: Any,
    ) -> None:
        """Move a job to ``target``; the single place a stage ever changes.

        Raises:
            InvalidTransitionError: If the transition is not in the stage table
                or the job's stage changed concurrently.
        """
        current = expected if expected is not None else Stage(self.jobs.get(job_id).stage)
        validate_transition(current, target)
        if not self.jobs.compare_and_set_stage(job_id, current, target, **fields):
            latest = self.jobs.get(job_id).stage
            raise InvalidTransitionError(latest, target)
        logger.info(
            "job_stage_changed",
            job_id=str(job_id),
            from_stage=str(current),
            to_stage=str(target),
        )

    def submit(self, task: str, job_id: UUID, **params: Any) -> None:
        task_id = self.runner.submit(task, job_id, **params)
        if task_id:
            self.jobs.update(job_id, task_id=task_id)

    def is_running(self, job_id: UUID) -> bool:
        """Whether background work for the job is known to be in flight.

        With a remote runner nothing is known locally, so any active stage
        counts as running.
        """
        if not self.runner.tracks_local_work:
            return True
        with self.lock:
            return job_id in self._running

    def ensure_idle(self, job: JobModel) -> None:
        """Raise ConcurrencyConflict if the job's owner has work in flight."""
        active = self.jobs.find_active(job.user_id)
        if active is None:
            return
        if active.id == job.id and not self.is_running(job.id):
            # Interrupted run (process restart); the job may be resumed
            return
        raise ConcurrencyConflict(job.user_id, active.id)

    def kind_for(self, job: JobModel) -> StageKind | None:
        """Stage kind the job is currently in, if any."""
        stage = Stage(job.stage)
        if stage == Stage.SCENE_REGENERATING:
            origin = Stage(job.regeneration_origin or Stage.PREVIEWS_DONE)
            return REGENERATION_KINDS[origin][-1]
        if stage == Stage.FAILED:
            return None
        spec = spec_for_stage(stage)
        return spec.kind if spec else None

    def job_context(self, job: JobModel) -> JobContext:
        personal_key = (
            decrypt_secret(job.encrypted_personal_key) if job.encrypted_personal_key else None
        )
        return JobContext(
            job_id=job.id,
            context=dict(job.context or {}),
            credentials=CredentialContext(user_id=job.user_id, personal_key=personal_key),
        )

    # -------------------------------------------------------------------------
    # Request-facing operations
    # -------------------------------------------------------------------------

    def start_job(self, user_id: str, input_text: str, personal_key: str | None = None) -> UUID:
        """Create a job and schedule scenario generation; returns immediately.

        Raises:
            ValidationError: If the input is empty or too long.
            ConcurrencyConflict: If the user already has an active job.
        """
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")
        text = (input_text or "").strip()
        if not text:
            raise ValidationError("Input text must not be empty")
        if len(text) > MAX_INPUT_LENGTH:
            raise ValidationError(f"Input text exceeds {MAX_INPUT_LENGTH} characters")

        with self.lock:
            active = self.jobs.find_active(user_id)
            if active is not None:
                raise ConcurrencyConflict(user_id, active.id)
            job = self.jobs.create(
                user_id=user_id,
                input_text=text,
                encrypted_personal_key=encrypt_secret(personal_key) if personal_key else None,
            )
            self.advance(
                job.id, Stage.SCENARIO_GENERATING, expected=Stage.CHATTING, started_at=_now()
            )

        logger.info("job_started", job_id=str(job.id), user_id=user_id)
        self.submit("scenario", job.id)
        return job.id

    def start_stage(self, job_id: UUID, kind: StageKind) -> Stage:
        """Enter ``kind``'s generating stage and schedule its scenes.

        Raises:
            InvalidTransitionError: If the stage cannot be started from here.
            ValidationError: If the previous stage left scenes without output.
            ConcurrencyConflict: If the user has another job in flight.
        """
        spec = STAGE_SPECS[StageKind(kind)]
        with self.lock:
            job = self.jobs.get(job_id)
            current = Stage(job.stage)
            validate_transition(current, spec.generating)
            self.ensure_idle(job)

            prev = previous_kind(spec.kind)
            if prev is not None and self.registry.stage_outcome(job_id, prev) != StageOutcome.COMPLETED:
                raise ValidationError(
                    f"Cannot start {spec.kind}: some scenes have no {prev} output yet; "
                    "retry or regenerate them first"
                )
            self.advance(job_id, spec.generating, expected=current, error_message=None)

        self.submit("stage", job_id, kind=str(spec.kind))
        return spec.generating

    def get_progress(self, job_id: UUID) -> Progress:
        """Read-only progress snapshot."""
        job = self.jobs.get(job_id)
        stage = Stage(job.stage)
        kind = self.kind_for(job)

        if kind is not None:
            counts = self.registry.counts(job_id, kind)
            completed, total, failed = counts.completed, counts.total, counts.failed
            message = f"{_STAGE_MESSAGES[stage]} ({completed}/{total})"
        else:
            total = len(self.registry.list_scenes(job_id))
            completed = total if stage == Stage.SCENARIO_DONE else 0
            failed = 0
            message = _STAGE_MESSAGES[stage]

        return Progress(
            job_id=job.id,
            stage=stage,
            completed=completed,
            total=total,
            failed=failed,
            message=message,
            error_message=job.error_message,
            final_video_url=self.blobs.presign(job.final_video_url) if job.final_video_url else None,
        )

    def get_checkpoint(self, job_id: UUID) -> Checkpoint:
        return self.checkpoints.get_checkpoint(job_id)

    def resume(self, job_id: UUID, skip_failed: bool = False) -> ResumeResult:
        return self.checkpoints.resume(job_id, skip_failed)

    def retry_failed(self, job_id: UUID, options: RetryOptions | None = None) -> RetryResult:
        return self.retries.retry_failed(job_id, options or RetryOptions())

    def get_failed_scenes(self, job_id: UUID) -> list[FailedSceneInfo]:
        return self.retries.get_failed_scenes(job_id)

    def regenerate_scene(self, job_id: UUID, scene_id: UUID, feedback: str | None = None) -> None:
        """Regenerate one scene's media (and audio when narration is underway).

        Raises:
            ValidationError: If the job is not in a stage that allows it.
            SceneNotFoundError: If the scene does not belong to the job.
        """
        with self.lock:
            job = self.jobs.get(job_id)
            current = Stage(job.stage)
            if current not in REGENERATION_KINDS:
                raise ValidationError(f"Scenes cannot be regenerated while the job is {current}")
            self.ensure_idle(job)
            scene = self.registry.get_scene(job_id, scene_id)
            validate_scene_transition(scene.status, "regenerating")

            self.advance(
                job_id,
                Stage.SCENE_REGENERATING,
                expected=current,
                regeneration_origin=str(current),
            )
            self.registry.request_regenerate(scene_id, feedback.strip() if feedback else None)
            self.registry.set_excluded([scene_id], False)

        logger.info("scene_regeneration_requested", job_id=str(job_id), scene_id=str(scene_id))
        self.submit("regenerate", job_id, scene_ids=[str(scene_id)])

    def edit_narration(self, job_id: UUID, scene_id: UUID, narration: str) -> None:
        """Replace a scene's narration before narration audio is generated.

        Raises:
            ValidationError: If the text is empty/too long or the stage is wrong.
        """
        text = (narration or "").strip()
        if not text:
            raise ValidationError("Narration must not be empty")
        if len(text) > MAX_NARRATION_LENGTH:
            raise ValidationError(f"Narration exceeds {MAX_NARRATION_LENGTH} characters")

        job = self.jobs.get(job_id)
        if Stage(job.stage) != Stage.PREVIEWS_DONE:
            raise ValidationError("Narration can only be edited once scene media is ready")
        self.registry.get_scene(job_id, scene_id)
        self.registry.update_narration(scene_id, text)
        logger.info("scene_narration_edited", job_id=str(job_id), scene_id=str(scene_id))

    def delete_job(self, job_id: UUID) -> None:
        """Delete a job, its scenes and stored artifacts.

        Raises:
            ConcurrencyConflict: If the job still has work in flight.
        """
        with self.lock:
            job = self.jobs.get(job_id)
            if is_active(job.stage) and self.is_running(job_id):
                raise ConcurrencyConflict(job.user_id, job.id)
            self.jobs.delete(job_id)
        removed = self.blobs.delete_prefix(f"jobs/{job_id}")
        logger.info("job_deleted", job_id=str(job_id), artifacts_removed=removed)

    # -------------------------------------------------------------------------
    # Background half
    # -------------------------------------------------------------------------

    def execute(self, task: str, job_id: UUID, params: dict[str, Any]) -> None:
        """Run one background task; terminal errors are recorded on the job."""
        with self.lock:
            self._running[job_id] = self._running.get(job_id, 0) + 1
        with job_log_context(job_id, task=task):
            try:
                self._dispatch(task, job_id, params)
            except Exception as e:
                logger.exception("pipeline_task_failed")
                self._record_terminal_error(job_id, e)
            finally:
                with self.lock:
                    remaining = self._running.pop(job_id, 1) - 1
                    if remaining:
                        self._running[job_id] = remaining

    def _dispatch(self, task: str, job_id: UUID, params: dict[str, Any]) -> None:
        if task == "scenario":
            self._run_scenario(job_id)
        elif task == "stage":
            scene_ids = params.get("scene_ids")
            kinds = params.get("kinds")
            self._run_stage(
                job_id,
                StageKind(params["kind"]),
                scene_ids=[UUID(s) for s in scene_ids] if scene_ids is not None else None,
                kinds=[StageKind(k) for k in kinds] if kinds is not None else None,
                skip_completed=params.get("skip_completed", True),
            )
        elif task == "regenerate":
            self._run_regenerate(job_id, [UUID(s) for s in params["scene_ids"]])
        else:
            raise ValueError(f"Unknown pipeline task: {task}")

    def _record_terminal_error(self, job_id: UUID, error: Exception) -> None:
        job = self.jobs.get(job_id)
        stage = Stage(job.stage)
        message = str(error) or type(error).__name__

        target: Stage | None = None
        if stage == Stage.SCENARIO_GENERATING:
            target = Stage.FAILED
        elif stage == Stage.SCENE_REGENERATING:
            target = Stage(job.regeneration_origin or Stage.PREVIEWS_DONE)
        else:
            spec = spec_for_stage(stage)
            if spec is not None and stage == spec.generating:
                target = spec.partial

        if target is None:
            self.jobs.update(job_id, error_message=message)
            return
        fields: dict[str, Any] = {"error_message": message}
        if stage == Stage.SCENE_REGENERATING:
            fields["regeneration_origin"] = None
        self.advance(job_id, target, expected=stage, **fields)

    def _generate_scenario(self, job: JobModel, ctx: JobContext) -> ScenarioDocument:
        request = GenerationRequest(
            kind=GenerationKind.SCENARIO,
            prompt=self.prompts.scenario_prompt(job.input_text),
            params={"input_text": job.input_text},
        )
        last_error: SceneEngineError | None = None
        for attempt in range(1, settings.scenario_max_attempts + 1):
            try:
                result = run_async(self.gateway.invoke(request, ctx.credentials))
                return parse_scenario(result.text or "")
            except (ProviderError, ValidationError) as e:
                last_error = e
                logger.warning(
                    "scenario_attempt_failed",
                    attempt=attempt,
                    error=str(e),
                )
        raise PipelineFailure(
            f"Scenario generation failed after {settings.scenario_max_attempts} attempts: {last_error}"
        ) from last_error

    def _run_scenario(self, job_id: UUID) -> None:
        job = self.jobs.get(job_id)
        if Stage(job.stage) != Stage.SCENARIO_GENERATING:
            logger.warning("scenario_run_skipped", stage=job.stage)
            return

        if not self.registry.list_scenes(job_id):
            document = self._generate_scenario(job, self.job_context(job))
            self.registry.create_batch(job_id, document.scene_specs())
            self.jobs.update(
                job_id,
                title=document.title,
                context=document.context,
                scenario_data=document.model_dump(mode="json"),
            )
        self.advance(job_id, Stage.SCENARIO_DONE, expected=Stage.SCENARIO_GENERATING)

        if self.auto_advance:
            self._auto_start(job_id, StageKind.PREVIEWS)

    def _run_stage(
        self,
        job_id: UUID,
        kind: StageKind,
        scene_ids: list[UUID] | None = None,
        kinds: list[StageKind] | None = None,
        skip_completed: bool = True,
    ) -> None:
        spec = STAGE_SPECS[kind]
        job = self.jobs.get(job_id)
        if Stage(job.stage) != spec.generating:
            logger.warning("stage_run_skipped", stage=job.stage, kind=str(kind))
            return

        for step_spec in STAGE_SPECS.values():
            self.registry.recover_interrupted(job_id, step_spec)

        if scene_ids is None:
            scene_ids = [
                scene.id
                for scene in self.registry.list_scenes(job_id, include_excluded=False)
                if getattr(scene, spec.step_field) != StepStatus.COMPLETED
            ]
        self.processor.run(self.job_context(job), scene_ids, kinds or [kind], skip_completed)
        self._finish_stage(job_id, spec)

    def _finish_stage(self, job_id: UUID, spec: StageSpec) -> None:
        """Leave the generating stage once every scene's step is terminal."""
        outcome = self.registry.stage_outcome(job_id, spec.kind)
        counts = self.registry.counts(job_id, spec.kind)

        if outcome == StageOutcome.COMPLETED:
            if spec.kind == StageKind.VIDEO and not self._compose_final(job_id):
                return
            fields: dict[str, Any] = {"error_message": None}
            if spec.kind == StageKind.VIDEO:
                fields["completed_at"] = _now()
            self.advance(job_id, spec.done, expected=spec.generating, **fields)
            logger.info(
                "stage_completed",
                kind=str(spec.kind),
                scenes=counts.total,
                excluded=counts.excluded,
            )
            following = next_kind(spec.kind)
            if self.auto_advance and following is not None:
                self._auto_start(job_id, following)
            return

        message = f"{counts.failed} of {counts.total} scenes failed"
        unfinished = counts.pending + counts.generating
        if unfinished:
            message += f", {unfinished} unfinished"
        self.advance(job_id, spec.partial, expected=spec.generating, error_message=message)
        logger.warning(
            "stage_partially_failed",
            kind=str(spec.kind),
            failed=counts.failed,
            total=counts.total,
        )

    def _compose_final(self, job_id: UUID) -> bool:
        """Compose the final video from the unit videos of included scenes."""
        job = self.jobs.get(job_id)
        scenes = self.registry.list_scenes(job_id, include_excluded=False)
        request = GenerationRequest(
            kind=GenerationKind.COMPOSE,
            prompt=job.title or job.input_text[:200],
            params={
                "scene_videos": [self.blobs.presign(s.scene_video_url) for s in scenes],
                "scene_ids": [str(s.id) for s in scenes],
            },
        )
        try:
            result = run_async(self.gateway.invoke(request, self.job_context(job).credentials))
        except ProviderError as e:
            self._fail_composition(job_id, str(e))
            return False

        ref = store_result(self.blobs, f"jobs/{job_id}/final", result)
        if ref is None:
            self._fail_composition(job_id, "provider returned no video")
            return False
        self.jobs.update(job_id, final_video_url=ref)
        logger.info("final_video_composed", scenes=len(scenes))
        return True

    def _fail_composition(self, job_id: UUID, reason: str) -> None:
        self.advance(
            job_id,
            Stage.VIDEO_FAILED,
            expected=Stage.VIDEO_GENERATING,
            error_message=f"Final composition failed: {reason}",
        )
        logger.warning("final_composition_failed", error=reason)

    def _run_regenerate(self, job_id: UUID, scene_ids: list[UUID]) -> None:
        job = self.jobs.get(job_id)
        if Stage(job.stage) != Stage.SCENE_REGENERATING:
            logger.warning("regeneration_run_skipped", stage=job.stage)
            return

        origin = Stage(job.regeneration_origin or Stage.PREVIEWS_DONE)
        self.processor.run(
            self.job_context(job), scene_ids, REGENERATION_KINDS[origin], skip_completed=False
        )
        self.advance(
            job_id, origin, expected=Stage.SCENE_REGENERATING, regeneration_origin=None
        )

        # Regeneration may have repaired the last failed narration
        tts = STAGE_SPECS[StageKind.TTS]
        if (
            origin == Stage.TTS_PARTIAL_FAILED
            and self.registry.stage_outcome(job_id, StageKind.TTS) == StageOutcome.COMPLETED
        ):
            self.advance(job_id, tts.generating, expected=origin, error_message=None)
            self._finish_stage(job_id, tts)

    def _auto_start(self, job_id: UUID, kind: StageKind) -> None:
        try:
            self.start_stage(job_id, kind)
        except SceneEngineError as e:
            logger.warning("auto_advance_skipped", kind=str(kind), error=str(e))


def build_pipeline(
    session_factory: sessionmaker[Session] | None = None,
    provider: GenerationProvider | None = None,
    runner: TaskRunner | None = None,
    limiters: RateLimiterRegistry | None = None,
    blobs: BlobStore | None = None,
    prompts: PromptProvider | None = None,
    auto_advance: bool | None = None,
) -> PipelineController:
    """Wire a controller and its collaborators."""
    session_factory = session_factory or SessionLocal
    registry = SceneRegistry(session_factory)
    gateway = ProviderGateway(
        provider=provider or get_generation_provider(),
        limiters=limiters or RateLimiterRegistry(session_factory),
        rotator=CredentialRotator(session_factory),
    )
    prompts = prompts or TemplatePromptProvider()
    blobs = blobs or LocalBlobStore()
    return PipelineController(
        jobs=JobStore(session_factory),
        registry=registry,
        processor=SceneProcessor(registry, gateway, prompts, blobs),
        gateway=gateway,
        prompts=prompts,
        blobs=blobs,
        runner=runner or get_task_runner(),
        auto_advance=auto_advance,
    )


@lru_cache
def get_pipeline() -> PipelineController:
    """Process-wide controller (shares limiters and credential state)."""
    return build_pipeline()
