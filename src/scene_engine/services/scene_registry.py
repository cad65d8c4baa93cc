"""Scene registry: the per-job set of independently generatable scenes.

Scenes are inserted once, atomically, right after scenario generation.
After that every change is a short single-purpose write scoped to one
scene and one field group, so no transaction is ever held open across a
slow provider call.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from scene_engine.db.models import SceneModel
from scene_engine.db.session import SessionLocal, session_scope
from scene_engine.domain.enums import SceneStatus, StageKind, StageOutcome, StepStatus
from scene_engine.domain.models import SceneSpec
from scene_engine.domain.state_machine import (
    STAGE_SPECS,
    StageSpec,
    aggregate,
    validate_scene_transition,
)
from scene_engine.errors import InvalidTransitionError, SceneNotFoundError, ValidationError
from scene_engine.logging import get_logger

logger = get_logger(__name__)

STEP_FIELDS = ("media_status", "audio_status", "video_status")
ARTIFACT_FIELDS = ("media_url", "audio_url", "subtitle_url", "scene_video_url")


@dataclass
class StageCounts:
    """Per-stage tallies over the non-excluded scenes of a job."""

    total: int
    completed: int
    failed: int
    generating: int
    excluded: int

    @property
    def pending(self) -> int:
        return self.total - self.completed - self.failed - self.generating


def _failed_steps(scene: SceneModel, fields: Sequence[str] = STEP_FIELDS) -> list[str]:
    return [field for field in fields if getattr(scene, field) == StepStatus.FAILED]


class SceneRegistry:
    """Reads and short writes over a job's scenes."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    # -------------------------------------------------------------------------
    # Creation and reads
    # -------------------------------------------------------------------------

    def create_batch(self, job_id: UUID, specs: Sequence[SceneSpec]) -> list[SceneModel]:
        """Insert all scenes of a job in one transaction.

        Raises:
            ValidationError: If the batch is empty, has duplicate orders or the
                job already has scenes.
        """
        if not specs:
            raise ValidationError("Scenario produced no scenes")
        orders = [spec.order for spec in specs]
        if len(set(orders)) != len(orders):
            raise ValidationError("Scene orders must be unique within a job")

        with session_scope(self._session_factory) as session:
            existing = session.execute(
                select(func.count()).select_from(SceneModel).where(SceneModel.job_id == job_id)
            ).scalar_one()
            if existing:
                raise ValidationError(f"Job {job_id} already has {existing} scenes")

            scenes = [
                SceneModel(
                    job_id=job_id,
                    scene_order=spec.order,
                    scene_type=str(spec.scene_type),
                    title=spec.title,
                    narration=spec.narration,
                    prompt=spec.prompt,
                    duration_seconds=spec.duration_seconds,
                    status=SceneStatus.PENDING,
                    media_status=StepStatus.PENDING,
                    audio_status=StepStatus.PENDING,
                    video_status=StepStatus.PENDING,
                    retry_count=0,
                    regenerate_count=0,
                    excluded=False,
                )
                for spec in sorted(specs, key=lambda s: s.order)
            ]
            session.add_all(scenes)
            session.flush()
            logger.info("scenes_created", job_id=str(job_id), count=len(scenes))
            return scenes

    def list_scenes(self, job_id: UUID, include_excluded: bool = True) -> list[SceneModel]:
        """All scenes of a job in ascending order."""
        with session_scope(self._session_factory) as session:
            query = select(SceneModel).where(SceneModel.job_id == job_id)
            if not include_excluded:
                query = query.where(SceneModel.excluded.is_(False))
            return list(session.execute(query.order_by(SceneModel.scene_order)).scalars())

    def get_scene(self, job_id: UUID, scene_id: UUID) -> SceneModel:
        """Fetch one scene of a job.

        Raises:
            SceneNotFoundError: If the scene does not belong to the job.
        """
        with session_scope(self._session_factory) as session:
            scene = session.get(SceneModel, scene_id)
            if scene is None or scene.job_id != job_id:
                raise SceneNotFoundError(f"Scene {scene_id} not found in job {job_id}")
            return scene

    def failed_scenes(self, job_id: UUID, *kinds: StageKind) -> list[SceneModel]:
        """Scenes with a failed step, restricted to the steps of ``kinds`` if given."""
        fields = [STAGE_SPECS[kind].step_field for kind in kinds] or list(STEP_FIELDS)
        return [s for s in self.list_scenes(job_id) if _failed_steps(s, fields)]

    # -------------------------------------------------------------------------
    # Short writes
    # -------------------------------------------------------------------------

    def _load(self, session: Session, scene_id: UUID) -> SceneModel:
        scene = session.get(SceneModel, scene_id)
        if scene is None:
            raise SceneNotFoundError(f"Scene {scene_id} not found")
        return scene

    def _set_status(self, scene: SceneModel, status: SceneStatus) -> None:
        validate_scene_transition(scene.status, status)
        scene.status = status

    def mark_step_started(self, scene_id: UUID, spec: StageSpec) -> None:
        """Scene enters GENERATING for ``spec``'s step."""
        with session_scope(self._session_factory) as session:
            scene = self._load(session, scene_id)
            self._set_status(scene, SceneStatus.GENERATING)
            setattr(scene, spec.step_field, StepStatus.GENERATING)

    def mark_step_completed(self, scene_id: UUID, spec: StageSpec) -> None:
        """Step succeeded; the scene moves to the stage's ready status.

        A scene with another step still failed stays FAILED and keeps that
        step's error.
        """
        with session_scope(self._session_factory) as session:
            scene = self._load(session, scene_id)
            setattr(scene, spec.step_field, StepStatus.COMPLETED)
            if _failed_steps(scene):
                # An earlier failure of another step still stands
                self._set_status(scene, SceneStatus.FAILED)
                return
            self._set_status(scene, spec.success_status)
            scene.failed_at = None
            scene.last_error = None

    def mark_step_failed(
        self,
        scene_id: UUID,
        spec: StageSpec,
        error: str,
        failed_at: str | None = None,
    ) -> None:
        """Step failed permanently; record why on the scene."""
        with session_scope(self._session_factory) as session:
            scene = self._load(session, scene_id)
            setattr(scene, spec.step_field, StepStatus.FAILED)
            self._set_status(scene, SceneStatus.FAILED)
            scene.failed_at = failed_at or spec.failed_at
            scene.last_error = error
        logger.warning(
            "scene_step_failed",
            scene_id=str(scene_id),
            step=spec.step_field,
            failed_at=failed_at or spec.failed_at,
            error=error,
        )

    def set_artifact(self, scene_id: UUID, field: str, ref: str | None) -> None:
        """Store one artifact reference (media, audio, subtitle or scene video)."""
        if field not in ARTIFACT_FIELDS:
            raise ValueError(f"Unknown artifact field: {field}")
        with session_scope(self._session_factory) as session:
            setattr(self._load(session, scene_id), field, ref)

    def set_duration(self, scene_id: UUID, duration_seconds: float) -> None:
        with session_scope(self._session_factory) as session:
            self._load(session, scene_id).duration_seconds = duration_seconds

    def increment_retry_count(self, scene_id: UUID) -> int:
        with session_scope(self._session_factory) as session:
            scene = self._load(session, scene_id)
            scene.retry_count = (scene.retry_count or 0) + 1
            return scene.retry_count

    def update_narration(self, scene_id: UUID, narration: str) -> None:
        with session_scope(self._session_factory) as session:
            self._load(session, scene_id).narration = narration

    def request_regenerate(self, scene_id: UUID, feedback: str | None) -> None:
        """Flag a scene for regeneration with optional user feedback."""
        with session_scope(self._session_factory) as session:
            scene = self._load(session, scene_id)
            self._set_status(scene, SceneStatus.REGENERATING)
            scene.user_feedback = feedback
            scene.regenerate_count = (scene.regenerate_count or 0) + 1

    def requeue(self, scene_id: UUID, spec: StageSpec) -> None:
        """Put a scene back in line for ``spec``'s step.

        The step goes back to PENDING. A FAILED scene with no other failed
        step becomes PENDING too; any other status is left as is.

        Raises:
            InvalidTransitionError: If the scene is still generating.
        """
        with session_scope(self._session_factory) as session:
            scene = self._load(session, scene_id)
            if scene.status == SceneStatus.GENERATING:
                raise InvalidTransitionError(scene.status, SceneStatus.PENDING)
            setattr(scene, spec.step_field, StepStatus.PENDING)
            if scene.status == SceneStatus.FAILED and not _failed_steps(scene):
                self._set_status(scene, SceneStatus.PENDING)
            scene.excluded = False

    def recover_interrupted(self, job_id: UUID, spec: StageSpec) -> int:
        """Return scenes stuck in GENERATING for ``spec`` to PENDING.

        Used after a crash: work that was in flight is simply redone.
        """
        field = getattr(SceneModel, spec.step_field)
        with session_scope(self._session_factory) as session:
            scenes = list(
                session.execute(
                    select(SceneModel).where(
                        SceneModel.job_id == job_id,
                        field == StepStatus.GENERATING,
                    )
                ).scalars()
            )
            for scene in scenes:
                setattr(scene, spec.step_field, StepStatus.PENDING)
                if scene.status == SceneStatus.GENERATING:
                    self._set_status(scene, SceneStatus.PENDING)
        if scenes:
            logger.info(
                "scenes_recovered",
                job_id=str(job_id),
                step=spec.step_field,
                count=len(scenes),
            )
        return len(scenes)

    def set_excluded(self, scene_ids: Sequence[UUID], excluded: bool) -> None:
        """Include or exclude scenes from stage completion and final output."""
        if not scene_ids:
            return
        with session_scope(self._session_factory) as session:
            session.execute(
                update(SceneModel)
                .where(SceneModel.id.in_(list(scene_ids)))
                .values(excluded=excluded)
            )

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def counts(self, job_id: UUID, kind: StageKind) -> StageCounts:
        field = STAGE_SPECS[kind].step_field
        scenes = self.list_scenes(job_id)
        included = [getattr(s, field) for s in scenes if not s.excluded]
        return StageCounts(
            total=len(included),
            completed=sum(1 for v in included if v == StepStatus.COMPLETED),
            failed=sum(1 for v in included if v == StepStatus.FAILED),
            generating=sum(1 for v in included if v == StepStatus.GENERATING),
            excluded=len(scenes) - len(included),
        )

    def stage_outcome(self, job_id: UUID, kind: StageKind) -> StageOutcome:
        """Aggregate the stage's step field over non-excluded scenes."""
        field = STAGE_SPECS[kind].step_field
        return aggregate(
            getattr(s, field) for s in self.list_scenes(job_id, include_excluded=False)
        )
