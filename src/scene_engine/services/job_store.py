"""Job persistence: short reads and writes over the ``jobs`` table."""

from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from scene_engine.db.models import JobModel
from scene_engine.db.session import SessionLocal, session_scope
from scene_engine.domain.enums import Stage
from scene_engine.domain.state_machine import ACTIVE_STAGES
from scene_engine.errors import JobNotFoundError

# Columns callers may set through ``update``; ``stage`` only moves via compare_and_set_stage
UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "context",
        "scenario_data",
        "error_message",
        "final_video_url",
        "regeneration_origin",
        "retry_count",
        "task_id",
        "started_at",
        "completed_at",
    }
)


class JobStore:
    """Data access for jobs."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def create(
        self,
        user_id: str,
        input_text: str,
        encrypted_personal_key: str | None = None,
    ) -> JobModel:
        with session_scope(self._session_factory) as session:
            job = JobModel(
                user_id=user_id,
                input_text=input_text,
                stage=Stage.CHATTING,
                encrypted_personal_key=encrypted_personal_key,
                retry_count=0,
            )
            session.add(job)
            session.flush()
            return job

    def get(self, job_id: UUID) -> JobModel:
        """Fetch a job.

        Raises:
            JobNotFoundError: If no such job exists.
        """
        with session_scope(self._session_factory) as session:
            job = session.get(JobModel, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return job

    def find_active(self, user_id: str) -> JobModel | None:
        """The user's job that currently has background work, if any."""
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(JobModel)
                .where(
                    JobModel.user_id == user_id,
                    JobModel.stage.in_([str(s) for s in ACTIVE_STAGES]),
                )
                .order_by(JobModel.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def list_for_user(self, user_id: str, limit: int = 20) -> list[JobModel]:
        with session_scope(self._session_factory) as session:
            return list(
                session.execute(
                    select(JobModel)
                    .where(JobModel.user_id == user_id)
                    .order_by(JobModel.created_at.desc())
                    .limit(limit)
                ).scalars()
            )

    def compare_and_set_stage(
        self,
        job_id: UUID,
        expected: Stage,
        target: Stage,
        **fields: Any,
    ) -> bool:
        """Move ``expected -> target`` atomically; False if the stage had changed."""
        self._check_fields(fields)
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(JobModel)
                .where(JobModel.id == job_id, JobModel.stage == str(expected))
                .values(stage=str(target), **fields)
            )
            return result.rowcount == 1

    def update(self, job_id: UUID, **fields: Any) -> None:
        self._check_fields(fields)
        with session_scope(self._session_factory) as session:
            job = session.get(JobModel, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            for name, value in fields.items():
                setattr(job, name, value)

    def delete(self, job_id: UUID) -> None:
        with session_scope(self._session_factory) as session:
            job = session.get(JobModel, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            session.delete(job)

    @staticmethod
    def _check_fields(fields: dict[str, Any]) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
