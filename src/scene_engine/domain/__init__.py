"""Domain models and business logic."""

from scene_engine.domain.enums import (
    GenerationKind,
    ProviderClass,
    SceneStatus,
    SceneType,
    Stage,
    StageKind,
    StageOutcome,
    StepStatus,
)
from scene_engine.domain.models import (
    Checkpoint,
    CredentialContext,
    Progress,
    ResumeResult,
    RetryOptions,
    RetryResult,
    SceneSpec,
)

__all__ = [
    "Checkpoint",
    "CredentialContext",
    "GenerationKind",
    "Progress",
    "ProviderClass",
    "ResumeResult",
    "RetryOptions",
    "RetryResult",
    "SceneSpec",
    "SceneStatus",
    "SceneType",
    "Stage",
    "StageKind",
    "StageOutcome",
    "StepStatus",
]
