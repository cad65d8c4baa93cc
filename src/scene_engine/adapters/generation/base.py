"""Base interface for generation providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from scene_engine.domain.enums import GenerationKind


@dataclass
class GenerationRequest:
    """Request for one external generation call."""

    kind: GenerationKind
    prompt: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResult:
    """Result from a generation call.

    Providers return either raw bytes (``data``), a remote ``url`` or, for
    text kinds such as scenarios and subtitles, ``text``.
    """

    data: bytes | None = None
    url: str | None = None
    text: str | None = None
    content_type: str | None = None
    duration_seconds: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class GenerationProvider(ABC):
    """Abstract base class for generation providers.

    Implementations signal failures by raising the ``ProviderError`` family
    from ``scene_engine.errors``:

    - ProviderRateLimited: the provider throttled the call
    - ProviderTransient: a temporary failure (``overloaded`` for HTTP 503)
    - ProviderContentFiltered: the prompt was refused on safety grounds

    Implementations:
    - StubGenerationProvider: Deterministic fake artifacts for tests and dev
    - HttpGenerationProvider: JSON-over-HTTP generation service
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name identifier."""
        ...

    @abstractmethod
    async def generate(self, request: GenerationRequest, api_key: str) -> GenerationResult:
        """Run one generation call authenticated with ``api_key``.

        Args:
            request: What to generate and from which prompt
            api_key: Credential selected for this call

        Returns:
            GenerationResult with the produced artifact
        """
        ...

    async def health_check(self) -> bool:
        """Check if the provider is available and healthy."""
        return True
