"""Domain enumerations."""

from enum import StrEnum


class Stage(StrEnum):
    """Job-level pipeline stage."""

    CHATTING = "chatting"
    SCENARIO_GENERATING = "scenario_generating"
    SCENARIO_DONE = "scenario_done"
    PREVIEWS_GENERATING = "previews_generating"
    PREVIEWS_DONE = "previews_done"
    PREVIEWS_PARTIAL_FAILED = "previews_partial_failed"
    SCENE_REGENERATING = "scene_regenerating"
    TTS_GENERATING = "tts_generating"
    TTS_DONE = "tts_done"
    TTS_PARTIAL_FAILED = "tts_partial_failed"
    VIDEO_GENERATING = "video_generating"
    VIDEO_DONE = "video_done"
    VIDEO_FAILED = "video_failed"
    FAILED = "failed"


class StageKind(StrEnum):
    """Generation-heavy stages that iterate the scene registry."""

    PREVIEWS = "previews"
    TTS = "tts"
    VIDEO = "video"


class SceneType(StrEnum):
    """Kind of scene unit."""

    OPENING = "opening"
    SLIDE = "slide"


class SceneStatus(StrEnum):
    """Overall micro-state of a scene."""

    PENDING = "pending"
    GENERATING = "generating"
    MEDIA_READY = "media_ready"
    TTS_READY = "tts_ready"
    COMPLETED = "completed"
    FAILED = "failed"
    REGENERATING = "regenerating"


class StepStatus(StrEnum):
    """Status of one per-stage sub-field of a scene (media, audio, video)."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class StageOutcome(StrEnum):
    """Aggregate state of a stage across its scenes."""

    COMPLETED = "completed"
    PARTIAL_FAILED = "partial_failed"
    IN_PROGRESS = "in_progress"


class ProviderClass(StrEnum):
    """Rate-limited provider classes; one limiter each."""

    SCENARIO = "scenario"
    IMAGE = "image"
    TTS = "tts"
    VIDEO = "video"


class GenerationKind(StrEnum):
    """What an external generation call produces."""

    SCENARIO = "scenario"
    IMAGE = "image"
    VIDEO_CLIP = "video_clip"
    SPEECH = "speech"
    SUBTITLE = "subtitle"
    SCENE_VIDEO = "scene_video"
    COMPOSE = "compose"

    @property
    def provider_class(self) -> ProviderClass:
        """Rate limiter / credential pool this kind is accounted against."""
        return _KIND_TO_CLASS[self]


_KIND_TO_CLASS = {
    GenerationKind.SCENARIO: ProviderClass.SCENARIO,
    GenerationKind.IMAGE: ProviderClass.IMAGE,
    GenerationKind.VIDEO_CLIP: ProviderClass.VIDEO,
    GenerationKind.SPEECH: ProviderClass.TTS,
    GenerationKind.SUBTITLE: ProviderClass.TTS,
    GenerationKind.SCENE_VIDEO: ProviderClass.VIDEO,
    GenerationKind.COMPOSE: ProviderClass.VIDEO,
}


class CheckpointStatus(StrEnum):
    """Status reported by a checkpoint."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class ResumeStatus(StrEnum):
    """Result of a resume request."""

    RESUMED = "resumed"
    ALREADY_COMPLETED = "already_completed"
    NOTHING_TO_RESUME = "nothing_to_resume"


class RetryStatus(StrEnum):
    """Result of a retry request."""

    PROCESSING = "processing"
    NO_FAILED_SCENES = "no_failed_scenes"
