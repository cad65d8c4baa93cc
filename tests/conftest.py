"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path
from uuid import UUID

import pytest

# Set test environment before importing app modules
_TEST_DIR = Path(tempfile.mkdtemp(prefix="scene-engine-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR / 'default.db'}"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["STORAGE_PATH"] = str(_TEST_DIR / "storage")
os.environ["TASK_BACKEND"] = "inline"
os.environ["GENERATION_PROVIDER"] = "stub"
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("ENCRYPTION_MASTER_KEY", None)

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from scene_engine.adapters.generation.stub import StubGenerationProvider  # noqa: E402
from scene_engine.adapters.prompts import TemplatePromptProvider  # noqa: E402
from scene_engine.adapters.storage import LocalBlobStore  # noqa: E402
from scene_engine.api.deps import get_pipeline_controller  # noqa: E402
from scene_engine.db.models import Base  # noqa: E402
from scene_engine.db.session import build_engine, build_session_factory  # noqa: E402
from scene_engine.domain.enums import ProviderClass, Stage, StageKind  # noqa: E402
from scene_engine.jobs.runner import InlineTaskRunner, TaskRunner  # noqa: E402
from scene_engine.main import app  # noqa: E402
from scene_engine.services.credentials import CredentialRotator  # noqa: E402
from scene_engine.services.gateway import ProviderGateway  # noqa: E402
from scene_engine.services.job_store import JobStore  # noqa: E402
from scene_engine.services.pipeline import PipelineController  # noqa: E402
from scene_engine.services.rate_limiter import RateLimiterRegistry  # noqa: E402
from scene_engine.services.scene_processor import SceneProcessor  # noqa: E402
from scene_engine.services.scene_registry import SceneRegistry  # noqa: E402


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTaskRunner(TaskRunner):
    """Accepts tasks without running them, like a worker that died."""

    def __init__(self) -> None:
        super().__init__()
        self.submitted: list[tuple[str, UUID, dict]] = []

    def submit(self, task: str, job_id: UUID, **params) -> str | None:
        self.submitted.append((task, job_id, params))
        return f"task-{len(self.submitted)}"

    def run_pending(self) -> None:
        """Execute every recorded task in submission order."""
        while self.submitted:
            task, job_id, params = self.submitted.pop(0)
            self._dispatch(task, job_id, params)


@pytest.fixture
def session_factory(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    """Fresh SQLite database per test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiters(session_factory: sessionmaker[Session], clock: FakeClock) -> RateLimiterRegistry:
    return RateLimiterRegistry(session_factory, clock=clock.time, sleep=clock.sleep)


@pytest.fixture
def rotator(session_factory: sessionmaker[Session]) -> CredentialRotator:
    """Credential pool with one key per provider class."""
    rotator = CredentialRotator(session_factory, max_error_count=3)
    for provider_class in ProviderClass:
        rotator.register(provider_class, f"{provider_class}-key-primary", label="primary")
    return rotator


@pytest.fixture
def provider() -> StubGenerationProvider:
    """Get a stub generation provider."""
    return StubGenerationProvider(slide_count=3)


@pytest.fixture
def gateway(
    provider: StubGenerationProvider,
    limiters: RateLimiterRegistry,
    rotator: CredentialRotator,
) -> ProviderGateway:
    return ProviderGateway(provider, limiters, rotator, timeout_seconds=5.0, max_attempts=2)


@pytest.fixture
def blobs(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(
        base_path=tmp_path / "blobs",
        public_url="http://testserver/artifacts",
        signing_key="test-signing-key",
    )


@pytest.fixture
def registry(session_factory: sessionmaker[Session]) -> SceneRegistry:
    return SceneRegistry(session_factory)


def _controller(
    session_factory: sessionmaker[Session],
    registry: SceneRegistry,
    gateway: ProviderGateway,
    blobs: LocalBlobStore,
    runner: TaskRunner,
    workers: int = 1,
    auto_advance: bool = False,
) -> PipelineController:
    prompts = TemplatePromptProvider()
    return PipelineController(
        jobs=JobStore(session_factory),
        registry=registry,
        processor=SceneProcessor(registry, gateway, prompts, blobs, workers=workers),
        gateway=gateway,
        prompts=prompts,
        blobs=blobs,
        runner=runner,
        auto_advance=auto_advance,
    )


@pytest.fixture
def pipeline(
    session_factory: sessionmaker[Session],
    registry: SceneRegistry,
    gateway: ProviderGateway,
    blobs: LocalBlobStore,
) -> PipelineController:
    """Controller that runs background work inline."""
    return _controller(session_factory, registry, gateway, blobs, InlineTaskRunner())


@pytest.fixture
def recording_runner() -> RecordingTaskRunner:
    return RecordingTaskRunner()


@pytest.fixture
def deferred_pipeline(
    session_factory: sessionmaker[Session],
    registry: SceneRegistry,
    gateway: ProviderGateway,
    blobs: LocalBlobStore,
    recording_runner: RecordingTaskRunner,
) -> PipelineController:
    """Controller whose background tasks only run on ``recording_runner.run_pending()``."""
    return _controller(session_factory, registry, gateway, blobs, recording_runner)


@pytest.fixture
def make_controller(
    session_factory: sessionmaker[Session],
    registry: SceneRegistry,
    gateway: ProviderGateway,
    blobs: LocalBlobStore,
):
    """Build a controller with custom worker count or auto-advance."""

    def _make(workers: int = 1, auto_advance: bool = False) -> PipelineController:
        return _controller(
            session_factory,
            registry,
            gateway,
            blobs,
            InlineTaskRunner(),
            workers=workers,
            auto_advance=auto_advance,
        )

    return _make


def advance_to(pipeline: PipelineController, job_id: UUID, stage: Stage) -> None:
    """Run stages inline until the job reaches ``stage`` (or stops short)."""
    order = [
        (Stage.SCENARIO_DONE, StageKind.PREVIEWS),
        (Stage.PREVIEWS_DONE, StageKind.TTS),
        (Stage.TTS_DONE, StageKind.VIDEO),
    ]
    for done, kind in order:
        if Stage(pipeline.jobs.get(job_id).stage) == stage:
            return
        if Stage(pipeline.jobs.get(job_id).stage) != done:
            return
        pipeline.start_stage(job_id, kind)


@pytest.fixture
def started_job(pipeline: PipelineController) -> UUID:
    """A job whose scenario has been generated (opening + 3 slides)."""
    return pipeline.start_job("alice", "How volcanoes form")


@pytest.fixture
def run_until():
    """Drive a job through stages inline; see ``advance_to``."""
    return advance_to


@pytest.fixture
def test_client(pipeline: PipelineController) -> Generator[TestClient, None, None]:
    """API client whose routes use the inline test controller."""
    app.dependency_overrides[get_pipeline_controller] = lambda: pipeline
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
