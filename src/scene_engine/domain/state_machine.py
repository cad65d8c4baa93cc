"""Stage and scene state machines.

Every stage change goes through ``validate_transition`` and every scene
status change goes through ``validate_scene_transition``. The tables below
are the only definition of what is legal.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from scene_engine.domain.enums import (
    SceneStatus,
    Stage,
    StageKind,
    StageOutcome,
    StepStatus,
)
from scene_engine.errors import InvalidTransitionError

# Allowed stage transitions. Failure -> retry edges are the only backward moves.
STAGE_TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.CHATTING: frozenset({Stage.SCENARIO_GENERATING}),
    Stage.SCENARIO_GENERATING: frozenset({Stage.SCENARIO_DONE, Stage.FAILED}),
    Stage.SCENARIO_DONE: frozenset({Stage.PREVIEWS_GENERATING}),
    Stage.PREVIEWS_GENERATING: frozenset({Stage.PREVIEWS_DONE, Stage.PREVIEWS_PARTIAL_FAILED}),
    Stage.PREVIEWS_PARTIAL_FAILED: frozenset({Stage.PREVIEWS_GENERATING}),
    Stage.PREVIEWS_DONE: frozenset({Stage.TTS_GENERATING, Stage.SCENE_REGENERATING}),
    Stage.SCENE_REGENERATING: frozenset({Stage.PREVIEWS_DONE, Stage.TTS_PARTIAL_FAILED}),
    Stage.TTS_GENERATING: frozenset({Stage.TTS_DONE, Stage.TTS_PARTIAL_FAILED}),
    Stage.TTS_PARTIAL_FAILED: frozenset({Stage.TTS_GENERATING, Stage.SCENE_REGENERATING}),
    Stage.TTS_DONE: frozenset({Stage.VIDEO_GENERATING}),
    Stage.VIDEO_GENERATING: frozenset({Stage.VIDEO_DONE, Stage.VIDEO_FAILED}),
    Stage.VIDEO_FAILED: frozenset({Stage.VIDEO_GENERATING}),
    Stage.VIDEO_DONE: frozenset(),
    Stage.FAILED: frozenset(),
}

# Stages in which background work is running for the job (single-flight guard)
ACTIVE_STAGES: frozenset[Stage] = frozenset(
    {
        Stage.SCENARIO_GENERATING,
        Stage.PREVIEWS_GENERATING,
        Stage.SCENE_REGENERATING,
        Stage.TTS_GENERATING,
        Stage.VIDEO_GENERATING,
    }
)

# Stages SCENE_REGENERATING may be entered from (and returns to), with the
# stage kinds whose steps it re-runs
REGENERATION_KINDS: dict[Stage, tuple[StageKind, ...]] = {
    Stage.PREVIEWS_DONE: (StageKind.PREVIEWS,),
    Stage.TTS_PARTIAL_FAILED: (StageKind.PREVIEWS, StageKind.TTS),
}


@dataclass(frozen=True)
class StageSpec:
    """Static description of a generation-heavy stage."""

    kind: StageKind
    generating: Stage
    done: Stage
    partial: Stage
    step_field: str  # scene column aggregated for this stage
    failed_at: str  # label recorded on a scene that fails in this stage
    success_status: SceneStatus  # scene micro-state after the step succeeds


STAGE_SPECS: dict[StageKind, StageSpec] = {
    StageKind.PREVIEWS: StageSpec(
        kind=StageKind.PREVIEWS,
        generating=Stage.PREVIEWS_GENERATING,
        done=Stage.PREVIEWS_DONE,
        partial=Stage.PREVIEWS_PARTIAL_FAILED,
        step_field="media_status",
        failed_at="media",
        success_status=SceneStatus.MEDIA_READY,
    ),
    StageKind.TTS: StageSpec(
        kind=StageKind.TTS,
        generating=Stage.TTS_GENERATING,
        done=Stage.TTS_DONE,
        partial=Stage.TTS_PARTIAL_FAILED,
        step_field="audio_status",
        failed_at="tts",
        success_status=SceneStatus.TTS_READY,
    ),
    StageKind.VIDEO: StageSpec(
        kind=StageKind.VIDEO,
        generating=Stage.VIDEO_GENERATING,
        done=Stage.VIDEO_DONE,
        partial=Stage.VIDEO_FAILED,
        step_field="video_status",
        failed_at="video",
        success_status=SceneStatus.COMPLETED,
    ),
}

# Scene micro-state transitions
SCENE_TRANSITIONS: dict[SceneStatus, frozenset[SceneStatus]] = {
    SceneStatus.PENDING: frozenset({SceneStatus.GENERATING}),
    SceneStatus.GENERATING: frozenset(
        {
            SceneStatus.MEDIA_READY,
            SceneStatus.TTS_READY,
            SceneStatus.COMPLETED,
            SceneStatus.FAILED,
            SceneStatus.PENDING,  # crash recovery on resume
        }
    ),
    SceneStatus.MEDIA_READY: frozenset({SceneStatus.GENERATING, SceneStatus.REGENERATING}),
    SceneStatus.TTS_READY: frozenset({SceneStatus.GENERATING, SceneStatus.REGENERATING}),
    SceneStatus.COMPLETED: frozenset({SceneStatus.REGENERATING}),
    SceneStatus.FAILED: frozenset(
        {SceneStatus.PENDING, SceneStatus.GENERATING, SceneStatus.REGENERATING}
    ),
    SceneStatus.REGENERATING: frozenset({SceneStatus.GENERATING}),
}


def can_transition(current: Stage, target: Stage) -> bool:
    """Check whether ``current -> target`` is a legal stage transition."""
    return target in STAGE_TRANSITIONS.get(current, frozenset())


def validate_transition(current: Stage | str, target: Stage | str) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is legal."""
    current_stage = Stage(current)
    target_stage = Stage(target)
    if not can_transition(current_stage, target_stage):
        raise InvalidTransitionError(current_stage, target_stage)


def validate_scene_transition(current: SceneStatus | str, target: SceneStatus | str) -> None:
    """Raise InvalidTransitionError unless the scene status change is legal."""
    current_status = SceneStatus(current)
    target_status = SceneStatus(target)
    if current_status == target_status:
        return
    if target_status not in SCENE_TRANSITIONS.get(current_status, frozenset()):
        raise InvalidTransitionError(current_status, target_status)


def is_active(stage: Stage | str) -> bool:
    """True if background work is running for a job in this stage."""
    return Stage(stage) in ACTIVE_STAGES


def spec_for_stage(stage: Stage | str) -> StageSpec | None:
    """Find the stage spec a generating/done/partial stage belongs to."""
    stage = Stage(stage)
    for spec in STAGE_SPECS.values():
        if stage in (spec.generating, spec.done, spec.partial):
            return spec
    return None


KIND_ORDER: tuple[StageKind, ...] = (StageKind.PREVIEWS, StageKind.TTS, StageKind.VIDEO)


def next_kind(kind: StageKind) -> StageKind | None:
    """Stage kind that follows ``kind`` in the pipeline."""
    index = KIND_ORDER.index(kind)
    return KIND_ORDER[index + 1] if index + 1 < len(KIND_ORDER) else None


def previous_kind(kind: StageKind) -> StageKind | None:
    """Stage kind that must be complete before ``kind`` can start."""
    index = KIND_ORDER.index(kind)
    return KIND_ORDER[index - 1] if index > 0 else None


def kinds_through(kind: StageKind) -> list[StageKind]:
    """Every stage kind up to and including ``kind``, in causal order."""
    return list(KIND_ORDER[: KIND_ORDER.index(kind) + 1])


def aggregate(statuses: Iterable[StepStatus | str]) -> StageOutcome:
    """Aggregate per-scene step statuses into a stage outcome.

    COMPLETED iff every status is completed; PARTIAL_FAILED iff at least one
    failed and none is still generating; IN_PROGRESS otherwise. An empty set
    of scenes is trivially complete.
    """
    values = [StepStatus(s) for s in statuses]
    if all(v == StepStatus.COMPLETED for v in values):
        return StageOutcome.COMPLETED
    if StepStatus.FAILED in values and StepStatus.GENERATING not in values:
        return StageOutcome.PARTIAL_FAILED
    return StageOutcome.IN_PROGRESS
