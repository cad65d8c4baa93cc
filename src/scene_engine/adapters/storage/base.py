"""Base interface for blob stores."""

from abc import ABC, abstractmethod


class BlobStore(ABC):
    """Stores generated artifacts and hands out time-limited URLs for them.

    A *ref* is an opaque string returned by ``put`` and persisted on scenes.
    Remote URLs returned directly by a provider are valid refs too; they are
    passed through by ``presign``.
    """

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        """Store ``data`` under ``key`` and return its ref."""
        ...

    @abstractmethod
    def get(self, ref: str) -> bytes:
        """Read the bytes behind ``ref``."""
        ...

    @abstractmethod
    def presign(self, ref: str, ttl_seconds: int | None = None) -> str:
        """Return a URL that grants temporary read access to ``ref``."""
        ...

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every artifact whose key starts with ``prefix``."""
        ...
