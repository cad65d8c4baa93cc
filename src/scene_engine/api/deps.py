"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from scene_engine.adapters.storage import LocalBlobStore
from scene_engine.db.session import get_session
from scene_engine.services.pipeline import PipelineController, get_pipeline

# Database session dependency
SessionDep = Annotated[Session, Depends(get_session)]


def get_pipeline_controller() -> PipelineController:
    """Get the process-wide pipeline controller."""
    return get_pipeline()


PipelineDep = Annotated[PipelineController, Depends(get_pipeline_controller)]


def get_blob_store(pipeline: PipelineDep) -> LocalBlobStore:
    """Blob store used to serve presigned artifact links."""
    blobs = pipeline.blobs
    if not isinstance(blobs, LocalBlobStore):
        raise RuntimeError("Artifact serving requires the local blob store")
    return blobs


BlobStoreDep = Annotated[LocalBlobStore, Depends(get_blob_store)]

# Caller identity; jobs of other users are reported as not found
UserIdDep = Annotated[str, Header(alias="X-User-Id", min_length=1, max_length=100)]
