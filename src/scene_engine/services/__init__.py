"""Application services."""

from scene_engine.services.credentials import CredentialRotator, SelectedCredential
from scene_engine.services.gateway import ProviderGateway
from scene_engine.services.job_store import JobStore
from scene_engine.services.pipeline import PipelineController, build_pipeline, get_pipeline
from scene_engine.services.rate_limiter import AdaptiveRateLimiter, RateLimiterRegistry
from scene_engine.services.scene_registry import SceneRegistry

__all__ = [
    "AdaptiveRateLimiter",
    "CredentialRotator",
    "JobStore",
    "PipelineController",
    "ProviderGateway",
    "RateLimiterRegistry",
    "SceneRegistry",
    "SelectedCredential",
    "build_pipeline",
    "get_pipeline",
]
