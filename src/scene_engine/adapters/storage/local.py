"""Local filesystem blob store."""

import hashlib
import hmac
import shutil
import time
from pathlib import Path

from scene_engine.adapters.storage.base import BlobStore
from scene_engine.config import settings
from scene_engine.logging import get_logger

logger = get_logger(__name__)

LOCAL_SCHEME = "local://"


class LocalBlobStore(BlobStore):
    """Blob store writing artifacts under a local directory.

    Presigned URLs carry an expiry timestamp and an HMAC signature that
    ``verify`` checks before an artifact is served.
    """

    def __init__(
        self,
        base_path: Path | None = None,
        public_url: str | None = None,
        signing_key: str | None = None,
    ) -> None:
        self.base_path = base_path or Path(settings.storage_path)
        self.public_url = (public_url or settings.storage_public_url).rstrip("/")
        self._signing_key = (signing_key or settings.storage_signing_key).encode()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if not path.is_relative_to(self.base_path.resolve()):
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    @staticmethod
    def key_of(ref: str) -> str:
        if not ref.startswith(LOCAL_SCHEME):
            raise ValueError(f"Not a local blob ref: {ref}")
        return ref[len(LOCAL_SCHEME) :]

    def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug("blob_stored", key=key, size=len(data), content_type=content_type)
        return f"{LOCAL_SCHEME}{key}"

    def get(self, ref: str) -> bytes:
        return self._path_for(self.key_of(ref)).read_bytes()

    def _signature(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode()
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def presign(self, ref: str, ttl_seconds: int | None = None) -> str:
        if not ref.startswith(LOCAL_SCHEME):
            return ref
        key = self.key_of(ref)
        expires = int(time.time()) + (ttl_seconds or settings.presign_ttl_seconds)
        return f"{self.public_url}/{key}?expires={expires}&signature={self._signature(key, expires)}"

    def verify(self, key: str, expires: int, signature: str) -> bool:
        """Check a presigned URL's expiry and signature."""
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(key, expires), signature)

    def open_path(self, key: str) -> Path:
        """Filesystem path of a stored artifact."""
        return self._path_for(key)

    def delete_prefix(self, prefix: str) -> int:
        root = self._path_for(prefix)
        if not root.exists():
            return 0
        if root.is_file():
            root.unlink()
            return 1
        count = sum(1 for p in root.rglob("*") if p.is_file())
        shutil.rmtree(root)
        logger.info("blob_prefix_deleted", prefix=prefix, files=count)
        return count
