"""Shared utilities."""

from scene_engine.utils.async_utils import run_async, with_timeout
from scene_engine.utils.cache import TTLCache

__all__ = ["TTLCache", "run_async", "with_timeout"]
