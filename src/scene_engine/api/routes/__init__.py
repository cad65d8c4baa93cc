"""API route modules."""

from scene_engine.api.routes import artifacts, health, jobs

__all__ = ["artifacts", "health", "jobs"]
