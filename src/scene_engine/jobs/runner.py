"""Background task execution.

The pipeline controller never runs stage work on the caller's thread (except
with the inline runner). It submits a named task; the runner executes it
later through the handler the controller bound to it. Failures are recorded
on the job by the handler itself, so a runner only has to log them.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any
from uuid import UUID, uuid4

from scene_engine.config import settings
from scene_engine.logging import get_logger

logger = get_logger(__name__)

TaskHandler = Callable[[str, UUID, dict[str, Any]], None]


class TaskRunner(ABC):
    """Executes named pipeline tasks in the background."""

    # Whether work submitted here runs in this process (so in-flight jobs are known locally)
    tracks_local_work: bool = True

    def __init__(self) -> None:
        self._handler: TaskHandler | None = None

    def bind(self, handler: TaskHandler) -> None:
        self._handler = handler

    def _dispatch(self, task: str, job_id: UUID, params: dict[str, Any]) -> None:
        if self._handler is None:
            raise RuntimeError("Task runner has no handler bound")
        self._handler(task, job_id, params)

    @abstractmethod
    def submit(self, task: str, job_id: UUID, **params: Any) -> str | None:
        """Schedule ``task`` for ``job_id``; returns a task id when there is one."""
        ...

    def shutdown(self, wait: bool = True) -> None:  # noqa: B027
        """Release runner resources."""


class InlineTaskRunner(TaskRunner):
    """Runs tasks synchronously on the caller's thread (tests, CLI ``--wait``)."""

    def submit(self, task: str, job_id: UUID, **params: Any) -> str | None:
        logger.debug("inline_task_started", task=task, job_id=str(job_id))
        self._dispatch(task, job_id, params)
        return None


class ThreadTaskRunner(TaskRunner):
    """Runs tasks on a process-local thread pool."""

    def __init__(self, max_workers: int | None = None) -> None:
        super().__init__()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.task_workers,
            thread_name_prefix="pipeline-task",
        )

    def submit(self, task: str, job_id: UUID, **params: Any) -> str | None:
        task_id = str(uuid4())
        future = self._executor.submit(self._dispatch, task, job_id, params)
        future.add_done_callback(lambda f: self._log_outcome(f, task, job_id, task_id))
        logger.info("thread_task_submitted", task=task, job_id=str(job_id), task_id=task_id)
        return task_id

    @staticmethod
    def _log_outcome(future: Future[None], task: str, job_id: UUID, task_id: str) -> None:
        error = future.exception()
        if error is not None:
            logger.error(
                "thread_task_failed",
                task=task,
                job_id=str(job_id),
                task_id=task_id,
                error=str(error),
            )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class CeleryTaskRunner(TaskRunner):
    """Dispatches tasks to Celery workers as ``pipeline.<task>``."""

    tracks_local_work = False

    def submit(self, task: str, job_id: UUID, **params: Any) -> str | None:
        from scene_engine.worker import celery_app

        result = celery_app.send_task(f"pipeline.{task}", args=[str(job_id)], kwargs=params)
        logger.info("celery_task_submitted", task=task, job_id=str(job_id), task_id=result.id)
        return result.id


def get_task_runner() -> TaskRunner:
    """Get the configured task runner."""
    backend = settings.task_backend.lower()

    if backend == "celery":
        return CeleryTaskRunner()
    elif backend == "inline":
        return InlineTaskRunner()
    else:
        return ThreadTaskRunner()
