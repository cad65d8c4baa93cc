"""Exception hierarchy for the scene pipeline.

Unit-level failures (one scene) are recorded on the scene and never abort
siblings. Pipeline-level failures (scenario generation) fail the whole job.
Provider errors are raised by generation adapters and classified by the
provider gateway.
"""

from uuid import UUID


class SceneEngineError(Exception):
    """Base class for all scene engine errors."""

    pass


class ValidationError(SceneEngineError):
    """Raised when a request is malformed; no background work is started."""

    pass


class ConcurrencyConflict(SceneEngineError):
    """Raised when the user already has a job in an active stage."""

    def __init__(self, user_id: str, active_job_id: UUID | None = None) -> None:
        self.user_id = user_id
        self.active_job_id = active_job_id
        detail = f" (job {active_job_id})" if active_job_id else ""
        super().__init__(f"User '{user_id}' already has an active generation job{detail}")


class JobNotFoundError(SceneEngineError):
    """Raised when a job does not exist or is not owned by the caller."""

    pass


class SceneNotFoundError(SceneEngineError):
    """Raised when a scene does not exist within the given job."""

    pass


class InvalidTransitionError(SceneEngineError):
    """Raised when a stage or scene status change is not in the transition table."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition: {current} -> {target}")


class EncryptionError(SceneEngineError):
    """Raised when credential encryption/decryption fails."""

    pass


# =============================================================================
# Provider errors
# =============================================================================


class ProviderError(SceneEngineError):
    """Base class for failures reported by an external generation provider."""

    retryable: bool = False


class ProviderRateLimited(ProviderError):
    """Provider rejected the call because of rate limiting (HTTP 429)."""

    retryable = True


class ProviderTransient(ProviderError):
    """Temporary provider failure worth retrying.

    ``overloaded`` marks signals such as HTTP 503 that should back off
    harder than an ordinary rate-limit rejection.
    """

    retryable = True

    def __init__(self, message: str, overloaded: bool = False) -> None:
        super().__init__(message)
        self.overloaded = overloaded


class ProviderTimeout(ProviderTransient):
    """External call exceeded its timeout."""

    def __init__(self, seconds: float) -> None:
        super().__init__(f"Provider call timed out after {seconds:g}s")
        self.seconds = seconds


class ProviderContentFiltered(ProviderError):
    """Provider refused the prompt on content/safety grounds."""

    pass


class ProviderExhausted(ProviderError):
    """No usable credential remains, even after degraded recovery."""

    pass


# =============================================================================
# Pipeline outcome errors
# =============================================================================


class UnitFailure(SceneEngineError):
    """One scene failed permanently after exhausting its retries."""

    def __init__(self, scene_id: UUID, step: str, message: str) -> None:
        self.scene_id = scene_id
        self.step = step
        self.reason = message
        super().__init__(f"Scene {scene_id} failed at {step}: {message}")


class PipelineFailure(SceneEngineError):
    """A job-level stage failed after its own bounded retries."""

    pass
