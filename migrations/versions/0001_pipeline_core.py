"""Scene pipeline core schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Jobs table
    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("stage", sa.String(50), nullable=False, server_default="chatting"),
        sa.Column("regeneration_origin", sa.String(50), nullable=True),
        sa.Column("input_text", sa.Text(), nullable=False),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("context", postgresql.JSONB(), nullable=True),
        sa.Column("scenario_data", postgresql.JSONB(), nullable=True),
        sa.Column("encrypted_personal_key", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("final_video_url", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("task_id", sa.String(255), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_jobs_user_id", "jobs", ["user_id"])
    op.create_index("ix_jobs_stage", "jobs", ["stage"])

    # Scenes table
    op.create_table(
        "scenes",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("job_id", sa.UUID(), nullable=False),
        sa.Column("scene_order", sa.Integer(), nullable=False),
        sa.Column("scene_type", sa.String(30), nullable=False),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("narration", sa.Text(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("duration_seconds", sa.Float(), nullable=False, server_default="10.0"),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("audio_url", sa.Text(), nullable=True),
        sa.Column("subtitle_url", sa.Text(), nullable=True),
        sa.Column("scene_video_url", sa.Text(), nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("media_status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("audio_status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("video_status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("failed_at", sa.String(20), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("regenerate_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("user_feedback", sa.Text(), nullable=True),
        sa.Column("excluded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("job_id", "scene_order", name="uq_scene_order"),
    )
    op.create_index("ix_scenes_job_id", "scenes", ["job_id"])
    op.create_index("ix_scenes_status", "scenes", ["status"])

    # Pooled API credentials
    op.create_table(
        "api_credentials",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("label", sa.String(200), nullable=True),
        sa.Column("encrypted_key", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_api_credentials_provider", "api_credentials", ["provider"])
    op.create_index("ix_api_credentials_is_active", "api_credentials", ["is_active"])

    # Rate limiter parameters per provider class
    op.create_table(
        "rate_limit_configs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("provider_class", sa.String(50), nullable=False),
        sa.Column("initial_delay_ms", sa.Integer(), nullable=False, server_default="6000"),
        sa.Column("min_delay_ms", sa.Integer(), nullable=False, server_default="6000"),
        sa.Column("max_delay_ms", sa.Integer(), nullable=False, server_default="30000"),
        sa.Column("success_decrease_ratio", sa.Float(), nullable=False, server_default="0.9"),
        sa.Column("error_increase_ratio", sa.Float(), nullable=False, server_default="1.5"),
        sa.Column("success_streak", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_class", name="uq_rate_limit_configs_provider_class"),
    )

    # Seed one row per provider class; video calls are slower and pricier
    op.execute(
        """
        INSERT INTO rate_limit_configs
            (id, provider_class, initial_delay_ms, min_delay_ms, max_delay_ms, description)
        VALUES
            (gen_random_uuid(), 'scenario', 2000, 1000, 20000, 'Scenario (LLM) calls'),
            (gen_random_uuid(), 'image', 6000, 6000, 30000, 'Image generation'),
            (gen_random_uuid(), 'tts', 3000, 2000, 20000, 'Speech and subtitles'),
            (gen_random_uuid(), 'video', 10000, 6000, 60000, 'Clip, scene video and composition')
        """
    )


def downgrade() -> None:
    op.drop_table("rate_limit_configs")
    op.drop_index("ix_api_credentials_is_active", table_name="api_credentials")
    op.drop_index("ix_api_credentials_provider", table_name="api_credentials")
    op.drop_table("api_credentials")
    op.drop_index("ix_scenes_status", table_name="scenes")
    op.drop_index("ix_scenes_job_id", table_name="scenes")
    op.drop_table("scenes")
    op.drop_index("ix_jobs_stage", table_name="jobs")
    op.drop_index("ix_jobs_user_id", table_name="jobs")
    op.drop_table("jobs")
