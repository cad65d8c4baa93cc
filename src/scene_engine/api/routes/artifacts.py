"""Serves stored artifacts behind presigned links."""

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from scene_engine.api.deps import BlobStoreDep
from scene_engine.logging import get_logger

router = APIRouter(prefix="/artifacts", tags=["Artifacts"])
logger = get_logger(__name__)


@router.get("/{key:path}", summary="Download artifact", response_class=FileResponse)
def get_artifact(key: str, expires: int, signature: str, blobs: BlobStoreDep) -> FileResponse:
    """Return an artifact if the link's signature is valid and not expired."""
    if not blobs.verify(key, expires, signature):
        logger.warning("artifact_link_rejected", key=key)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired link")
    try:
        path = blobs.open_path(key)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Artifact not found") from e
    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Artifact not found")
    return FileResponse(path)
