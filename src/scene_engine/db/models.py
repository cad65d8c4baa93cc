"""SQLAlchemy ORM models."""

from datetime import datetime
from typing import Any
from uuid import UUID as PyUUID
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    true,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class JobModel(Base):
    """Generation job (one user session) ORM model."""

    __tablename__ = "jobs"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(50), server_default="chatting", index=True)
    # Stage to return to when SCENE_REGENERATING finishes
    regeneration_origin: Mapped[str | None] = mapped_column(String(50), nullable=True)
    input_text: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # Shared job-level context (character / style descriptor) passed to every scene
    context: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    scenario_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    encrypted_personal_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, server_default="0")
    task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    # Relationships
    scenes: Mapped[list["SceneModel"]] = relationship(
        "SceneModel",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="SceneModel.scene_order",
    )


class SceneModel(Base):
    """Scene (independently generatable unit, ordered within a job) ORM model."""

    __tablename__ = "scenes"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), index=True
    )
    scene_order: Mapped[int] = mapped_column(Integer, nullable=False)
    scene_type: Mapped[str] = mapped_column(String(30), nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    narration: Mapped[str | None] = mapped_column(Text, nullable=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    duration_seconds: Mapped[float] = mapped_column(Float, server_default="10.0")

    # Artifacts
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    subtitle_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    scene_video_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Overall micro-state plus one sub-field per stage kind
    status: Mapped[str] = mapped_column(String(30), server_default="pending", index=True)
    media_status: Mapped[str] = mapped_column(String(30), server_default="pending")
    audio_status: Mapped[str] = mapped_column(String(30), server_default="pending")
    video_status: Mapped[str] = mapped_column(String(30), server_default="pending")
    failed_at: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, server_default="0")
    regenerate_count: Mapped[int] = mapped_column(Integer, server_default="0")
    user_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Left out of stage completion and final output after resume(skip_failed=True)
    excluded: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    # Constraints
    __table_args__ = (UniqueConstraint("job_id", "scene_order", name="uq_scene_order"),)

    # Relationships
    job: Mapped["JobModel"] = relationship("JobModel", back_populates="scenes")


class CredentialModel(Base):
    """Pooled API credential ORM model."""

    __tablename__ = "api_credentials"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    label: Mapped[str | None] = mapped_column(String(200), nullable=True)
    encrypted_key: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true(), index=True)
    error_count: Mapped[int] = mapped_column(Integer, server_default="0")
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )


class RateLimitConfigModel(Base):
    """Runtime-tunable adaptive rate limiter parameters per provider class."""

    __tablename__ = "rate_limit_configs"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    provider_class: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    initial_delay_ms: Mapped[int] = mapped_column(Integer, server_default="6000")
    min_delay_ms: Mapped[int] = mapped_column(Integer, server_default="6000")
    max_delay_ms: Mapped[int] = mapped_column(Integer, server_default="30000")
    success_decrease_ratio: Mapped[float] = mapped_column(Float, server_default="0.9")
    error_increase_ratio: Mapped[float] = mapped_column(Float, server_default="1.5")
    success_streak: Mapped[int] = mapped_column(Integer, server_default="3")
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )
