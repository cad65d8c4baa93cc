"""Domain models - pure Python classes independent of database."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from scene_engine.domain.enums import (
    CheckpointStatus,
    ResumeStatus,
    RetryStatus,
    SceneType,
    Stage,
    StageKind,
)


@dataclass
class SceneSpec:
    """A scene to be inserted right after scenario generation."""

    order: int
    scene_type: SceneType
    prompt: str
    narration: str | None = None
    title: str | None = None
    duration_seconds: float = 10.0


@dataclass
class CredentialContext:
    """Explicit per-operation credential context.

    ``personal_key`` pins one non-pooled credential for every provider call
    made on behalf of this context and bypasses rotation entirely.
    """

    user_id: str
    personal_key: str | None = None

    @property
    def is_pinned(self) -> bool:
        return bool(self.personal_key)


@dataclass
class Progress:
    """Read-only progress snapshot for polling clients."""

    job_id: UUID
    stage: Stage
    completed: int
    total: int
    failed: int = 0
    message: str = ""
    error_message: str | None = None
    final_video_url: str | None = None

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return int(self.completed * 100 / self.total)


@dataclass
class Checkpoint:
    """Resumable progress derived from persisted scene state."""

    job_id: UUID
    stage: Stage
    kind: StageKind | None
    status: CheckpointStatus
    total_count: int
    completed_count: int
    failed_count: int
    completed_scene_ids: list[UUID] = field(default_factory=list)
    failed_scene_ids: list[UUID] = field(default_factory=list)
    excluded_scene_ids: list[UUID] = field(default_factory=list)
    last_updated: datetime | None = None
    can_resume: bool = False

    @property
    def pending_count(self) -> int:
        return self.total_count - self.completed_count - self.failed_count


@dataclass
class ResumeResult:
    """Outcome of a resume request."""

    job_id: UUID
    status: ResumeStatus
    resumed_from_index: int | None = None
    remaining_count: int = 0
    message: str = ""


@dataclass
class RetryOptions:
    """Which scenes to retry and how much of their pipeline to re-run."""

    scene_ids: list[UUID] | None = None
    media_only: bool = False
    include_pending: bool = False


@dataclass
class FailedSceneInfo:
    """Details about one failed scene."""

    scene_id: UUID
    order: int
    scene_type: SceneType
    failed_at: str | None
    error_message: str | None
    retry_count: int
    is_retrying: bool


@dataclass
class RetryResult:
    """Outcome of a retry request."""

    job_id: UUID
    status: RetryStatus
    total_failed_count: int
    retrying_count: int
    failed_scenes: list[FailedSceneInfo] = field(default_factory=list)
    message: str = ""


@dataclass
class GenerationArtifact:
    """Artifact reference returned to the pipeline after a guarded call."""

    url: str | None
    data: bytes | None = None
    duration_seconds: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
