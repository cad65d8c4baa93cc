"""Job management endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Response, status
from pydantic import BaseModel, Field

from scene_engine.api.deps import PipelineDep, UserIdDep
from scene_engine.domain.enums import (
    CheckpointStatus,
    ResumeStatus,
    RetryStatus,
    SceneType,
    Stage,
    StageKind,
)
from scene_engine.domain.models import RetryOptions
from scene_engine.errors import JobNotFoundError
from scene_engine.logging import get_logger
from scene_engine.services.pipeline import MAX_INPUT_LENGTH, MAX_NARRATION_LENGTH, PipelineController

router = APIRouter(prefix="/jobs", tags=["Jobs"])
logger = get_logger(__name__)


# =============================================================================
# Schemas
# =============================================================================


class StartJobRequest(BaseModel):
    """Request to start a generation job."""

    input_text: str = Field(..., min_length=1, max_length=MAX_INPUT_LENGTH)
    personal_key: str | None = Field(
        None, description="Personal API key used for every provider call of this job"
    )


class JobAcceptedResponse(BaseModel):
    """Response when background work has been scheduled."""

    job_id: UUID
    stage: Stage
    message: str


class JobSummary(BaseModel):
    """One job in a listing."""

    job_id: UUID
    stage: Stage
    title: str | None
    error_message: str | None
    created_at: datetime | None


class ProgressResponse(BaseModel):
    """Progress snapshot."""

    job_id: UUID
    stage: Stage
    completed: int
    total: int
    failed: int
    percent: int
    message: str
    error_message: str | None = None
    final_video_url: str | None = None


class SceneResponse(BaseModel):
    """One scene with its per-stage state."""

    scene_id: UUID
    order: int
    scene_type: SceneType
    title: str | None
    narration: str | None
    status: str
    media_status: str
    audio_status: str
    video_status: str
    excluded: bool
    failed_at: str | None
    last_error: str | None


class CheckpointResponse(BaseModel):
    """Checkpoint derived from persisted scene state."""

    job_id: UUID
    stage: Stage
    kind: StageKind | None
    status: CheckpointStatus
    total_count: int
    completed_count: int
    failed_count: int
    pending_count: int
    completed_scene_ids: list[UUID]
    failed_scene_ids: list[UUID]
    excluded_scene_ids: list[UUID]
    last_updated: datetime | None
    can_resume: bool


class ResumeRequest(BaseModel):
    """Request to resume the current stage."""

    skip_failed: bool = False


class ResumeResponse(BaseModel):
    job_id: UUID
    status: ResumeStatus
    resumed_from_index: int | None
    remaining_count: int
    message: str


class RetryRequest(BaseModel):
    """Request to retry failed scenes."""

    scene_ids: list[UUID] | None = None
    media_only: bool = False
    include_pending: bool = False


class FailedSceneResponse(BaseModel):
    scene_id: UUID
    order: int
    scene_type: SceneType
    failed_at: str | None
    error_message: str | None
    retry_count: int
    is_retrying: bool


class RetryResponse(BaseModel):
    job_id: UUID
    status: RetryStatus
    total_failed_count: int
    retrying_count: int
    failed_scenes: list[FailedSceneResponse]
    message: str


class RegenerateRequest(BaseModel):
    """Request to regenerate one scene."""

    feedback: str | None = Field(None, max_length=2000)


class NarrationRequest(BaseModel):
    """New narration text for a scene."""

    narration: str = Field(..., min_length=1, max_length=MAX_NARRATION_LENGTH)


def _owned_job(pipeline: PipelineController, job_id: UUID, user_id: str) -> None:
    job = pipeline.jobs.get(job_id)
    if job.user_id != user_id:
        raise JobNotFoundError(f"Job not found: {job_id}")


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start job",
    description="Create a job and schedule scenario generation.",
)
def start_job(
    request: StartJobRequest, user_id: UserIdDep, pipeline: PipelineDep
) -> JobAcceptedResponse:
    job_id = pipeline.start_job(user_id, request.input_text, request.personal_key)
    logger.info("job_start_requested", job_id=str(job_id), user_id=user_id)
    return JobAcceptedResponse(
        job_id=job_id,
        stage=Stage(pipeline.jobs.get(job_id).stage),
        message="Scenario generation scheduled",
    )


@router.get("", response_model=list[JobSummary], summary="List jobs")
def list_jobs(user_id: UserIdDep, pipeline: PipelineDep, limit: int = 20) -> list[JobSummary]:
    return [
        JobSummary(
            job_id=job.id,
            stage=Stage(job.stage),
            title=job.title,
            error_message=job.error_message,
            created_at=job.created_at,
        )
        for job in pipeline.jobs.list_for_user(user_id, limit=min(limit, 100))
    ]


@router.get("/{job_id}", response_model=ProgressResponse, summary="Get progress")
def get_progress(job_id: UUID, user_id: UserIdDep, pipeline: PipelineDep) -> ProgressResponse:
    _owned_job(pipeline, job_id, user_id)
    progress = pipeline.get_progress(job_id)
    return ProgressResponse(
        job_id=progress.job_id,
        stage=progress.stage,
        completed=progress.completed,
        total=progress.total,
        failed=progress.failed,
        percent=progress.percent,
        message=progress.message,
        error_message=progress.error_message,
        final_video_url=progress.final_video_url,
    )


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete job")
def delete_job(job_id: UUID, user_id: UserIdDep, pipeline: PipelineDep) -> Response:
    _owned_job(pipeline, job_id, user_id)
    pipeline.delete_job(job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{job_id}/stages/{kind}",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start stage",
)
def start_stage(
    job_id: UUID, kind: StageKind, user_id: UserIdDep, pipeline: PipelineDep
) -> JobAcceptedResponse:
    _owned_job(pipeline, job_id, user_id)
    stage = pipeline.start_stage(job_id, kind)
    return JobAcceptedResponse(job_id=job_id, stage=stage, message=f"Stage {kind} scheduled")


@router.get("/{job_id}/scenes", response_model=list[SceneResponse], summary="List scenes")
def list_scenes(job_id: UUID, user_id: UserIdDep, pipeline: PipelineDep) -> list[SceneResponse]:
    _owned_job(pipeline, job_id, user_id)
    return [
        SceneResponse(
            scene_id=scene.id,
            order=scene.scene_order,
            scene_type=SceneType(scene.scene_type),
            title=scene.title,
            narration=scene.narration,
            status=scene.status,
            media_status=scene.media_status,
            audio_status=scene.audio_status,
            video_status=scene.video_status,
            excluded=scene.excluded,
            failed_at=scene.failed_at,
            last_error=scene.last_error,
        )
        for scene in pipeline.registry.list_scenes(job_id)
    ]


@router.get("/{job_id}/checkpoint", response_model=CheckpointResponse, summary="Get checkpoint")
def get_checkpoint(job_id: UUID, user_id: UserIdDep, pipeline: PipelineDep) -> CheckpointResponse:
    _owned_job(pipeline, job_id, user_id)
    checkpoint = pipeline.get_checkpoint(job_id)
    return CheckpointResponse(
        job_id=checkpoint.job_id,
        stage=checkpoint.stage,
        kind=checkpoint.kind,
        status=checkpoint.status,
        total_count=checkpoint.total_count,
        completed_count=checkpoint.completed_count,
        failed_count=checkpoint.failed_count,
        pending_count=checkpoint.pending_count,
        completed_scene_ids=checkpoint.completed_scene_ids,
        failed_scene_ids=checkpoint.failed_scene_ids,
        excluded_scene_ids=checkpoint.excluded_scene_ids,
        last_updated=checkpoint.last_updated,
        can_resume=checkpoint.can_resume,
    )


@router.post("/{job_id}/resume", response_model=ResumeResponse, summary="Resume stage")
def resume(
    job_id: UUID,
    user_id: UserIdDep,
    pipeline: PipelineDep,
    request: ResumeRequest | None = None,
) -> ResumeResponse:
    _owned_job(pipeline, job_id, user_id)
    result = pipeline.resume(job_id, skip_failed=request.skip_failed if request else False)
    return ResumeResponse(
        job_id=result.job_id,
        status=result.status,
        resumed_from_index=result.resumed_from_index,
        remaining_count=result.remaining_count,
        message=result.message,
    )


@router.get(
    "/{job_id}/failed-scenes",
    response_model=list[FailedSceneResponse],
    summary="List failed scenes",
)
def get_failed_scenes(
    job_id: UUID, user_id: UserIdDep, pipeline: PipelineDep
) -> list[FailedSceneResponse]:
    _owned_job(pipeline, job_id, user_id)
    return [FailedSceneResponse(**vars(info)) for info in pipeline.get_failed_scenes(job_id)]


@router.post("/{job_id}/retry", response_model=RetryResponse, summary="Retry failed scenes")
def retry_failed(
    job_id: UUID,
    user_id: UserIdDep,
    pipeline: PipelineDep,
    request: RetryRequest | None = None,
) -> RetryResponse:
    _owned_job(pipeline, job_id, user_id)
    request = request or RetryRequest()
    result = pipeline.retry_failed(
        job_id,
        RetryOptions(
            scene_ids=request.scene_ids,
            media_only=request.media_only,
            include_pending=request.include_pending,
        ),
    )
    return RetryResponse(
        job_id=result.job_id,
        status=result.status,
        total_failed_count=result.total_failed_count,
        retrying_count=result.retrying_count,
        failed_scenes=[FailedSceneResponse(**vars(info)) for info in result.failed_scenes],
        message=result.message,
    )


@router.post(
    "/{job_id}/scenes/{scene_id}/regenerate",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Regenerate scene",
)
def regenerate_scene(
    job_id: UUID,
    scene_id: UUID,
    user_id: UserIdDep,
    pipeline: PipelineDep,
    request: RegenerateRequest | None = None,
) -> JobAcceptedResponse:
    _owned_job(pipeline, job_id, user_id)
    pipeline.regenerate_scene(job_id, scene_id, request.feedback if request else None)
    return JobAcceptedResponse(
        job_id=job_id,
        stage=Stage(pipeline.jobs.get(job_id).stage),
        message="Scene regeneration scheduled",
    )


@router.put(
    "/{job_id}/scenes/{scene_id}/narration",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Edit narration",
)
def edit_narration(
    job_id: UUID,
    scene_id: UUID,
    request: NarrationRequest,
    user_id: UserIdDep,
    pipeline: PipelineDep,
) -> Response:
    _owned_job(pipeline, job_id, user_id)
    pipeline.edit_narration(job_id, scene_id, request.narration)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
