"""Adapters for external services."""

from scene_engine.adapters.generation.base import GenerationProvider
from scene_engine.adapters.prompts.base import PromptProvider
from scene_engine.adapters.storage.base import BlobStore

__all__ = [
    "BlobStore",
    "GenerationProvider",
    "PromptProvider",
]
