"""Artifact storage adapters."""

from scene_engine.adapters.storage.base import BlobStore
from scene_engine.adapters.storage.local import LocalBlobStore

__all__ = ["BlobStore", "LocalBlobStore"]
