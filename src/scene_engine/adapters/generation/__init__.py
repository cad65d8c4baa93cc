"""Generation provider adapters."""

from scene_engine.adapters.generation.base import (
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
)
from scene_engine.adapters.generation.http import HttpGenerationProvider
from scene_engine.adapters.generation.stub import StubGenerationProvider
from scene_engine.config import settings


def get_generation_provider() -> GenerationProvider:
    """Get the configured generation provider."""
    provider = settings.generation_provider.lower()

    if provider == "http":
        return HttpGenerationProvider(base_url=settings.generation_base_url)
    return StubGenerationProvider()


__all__ = [
    "GenerationProvider",
    "GenerationRequest",
    "GenerationResult",
    "HttpGenerationProvider",
    "StubGenerationProvider",
    "get_generation_provider",
]
