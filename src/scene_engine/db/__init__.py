"""Database layer."""

from scene_engine.db.models import (
    Base,
    CredentialModel,
    JobModel,
    RateLimitConfigModel,
    SceneModel,
)
from scene_engine.db.session import get_session, get_session_context, init_db, session_scope

__all__ = [
    "Base",
    "get_session",
    "get_session_context",
    "init_db",
    "session_scope",
    # Models
    "CredentialModel",
    "JobModel",
    "RateLimitConfigModel",
    "SceneModel",
]
