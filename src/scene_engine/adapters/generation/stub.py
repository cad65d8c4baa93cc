"""Stub generation provider for testing."""

import asyncio
import json
import threading
from dataclasses import dataclass

from scene_engine.adapters.generation.base import (
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
)
from scene_engine.domain.enums import GenerationKind
from scene_engine.errors import ProviderError
from scene_engine.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ScriptedFailure:
    """Failure the stub raises for matching requests.

    ``match`` is a substring of the prompt; ``times`` limits how often the
    failure fires (None means every time).
    """

    kind: GenerationKind
    error: ProviderError
    match: str | None = None
    times: int | None = None

    def applies_to(self, request: GenerationRequest) -> bool:
        if request.kind != self.kind:
            return False
        if self.times is not None and self.times <= 0:
            return False
        return self.match is None or self.match in request.prompt


class StubGenerationProvider(GenerationProvider):
    """Stub provider that produces deterministic artifacts without external calls.

    Tests can script failures with ``fail``, slow calls down with ``stall``
    and inspect every request in ``calls``.
    """

    def __init__(self, delay_seconds: float = 0.0, slide_count: int = 3) -> None:
        self.delay_seconds = delay_seconds
        self.slide_count = slide_count
        self.calls: list[tuple[GenerationRequest, str]] = []
        self._failures: list[ScriptedFailure] = []
        self._stalls: list[tuple[GenerationKind, float, str | None]] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "stub"

    def fail(
        self,
        kind: GenerationKind,
        error: ProviderError,
        match: str | None = None,
        times: int | None = None,
    ) -> None:
        """Make matching requests raise ``error``."""
        with self._lock:
            self._failures.append(ScriptedFailure(kind=kind, error=error, match=match, times=times))

    def stall(self, kind: GenerationKind, seconds: float, match: str | None = None) -> None:
        """Make matching requests take ``seconds`` before answering."""
        with self._lock:
            self._stalls.append((kind, seconds, match))

    def clear_failures(self) -> None:
        with self._lock:
            self._failures.clear()
            self._stalls.clear()

    def _delay_for(self, request: GenerationRequest) -> float:
        with self._lock:
            stalls = [
                seconds
                for kind, seconds, match in self._stalls
                if kind == request.kind and (match is None or match in request.prompt)
            ]
        return max(stalls, default=self.delay_seconds)

    def calls_for(self, kind: GenerationKind) -> list[GenerationRequest]:
        with self._lock:
            return [request for request, _ in self.calls if request.kind == kind]

    def _check_failures(self, request: GenerationRequest) -> None:
        with self._lock:
            for failure in self._failures:
                if failure.applies_to(request):
                    if failure.times is not None:
                        failure.times -= 1
                    raise failure.error

    async def generate(self, request: GenerationRequest, api_key: str) -> GenerationResult:
        """Simulate a generation call."""
        with self._lock:
            self.calls.append((request, api_key))

        delay = self._delay_for(request)
        if delay:
            await asyncio.sleep(delay)

        self._check_failures(request)

        logger.debug("stub_generation", kind=str(request.kind), prompt=request.prompt[:80])

        if request.kind == GenerationKind.SCENARIO:
            return GenerationResult(
                text=json.dumps(self._scenario(request)),
                content_type="application/json",
            )
        if request.kind == GenerationKind.SUBTITLE:
            duration = float(request.params.get("duration_seconds", 5.0))
            return GenerationResult(
                text=f"1\n00:00:00,000 --> 00:00:{int(duration):02d},000\n{request.prompt}\n",
                content_type="application/x-subrip",
                duration_seconds=duration,
            )

        payload = f"STUB_{str(request.kind).upper()}:{request.prompt[:100]}".encode()
        duration = None
        if request.kind == GenerationKind.SPEECH:
            # Roughly 15 characters of narration per second
            duration = max(1.0, round(len(request.prompt) / 15.0, 2))
        elif request.kind in (GenerationKind.VIDEO_CLIP, GenerationKind.SCENE_VIDEO):
            duration = float(request.params.get("duration_seconds", 5.0))

        return GenerationResult(
            data=payload,
            content_type=_CONTENT_TYPES.get(request.kind, "application/octet-stream"),
            duration_seconds=duration,
            metadata={"provider": self.name},
        )

    def _scenario(self, request: GenerationRequest) -> dict:
        count = int(request.params.get("slide_count", self.slide_count))
        topic = str(request.params.get("input_text") or request.prompt).strip()[:60] or "Untitled"
        return {
            "title": topic,
            "context": {"character": "narrator", "style": "clean illustration"},
            "opening": {
                "title": topic,
                "prompt": f"Opening shot for {topic}",
                "narration": f"Welcome. Today: {topic}.",
            },
            "slides": [
                {
                    "title": f"Part {i}",
                    "prompt": f"Illustration {i} for {topic}",
                    "narration": f"Scene {i} narration about {topic}.",
                }
                for i in range(1, count + 1)
            ],
        }


_CONTENT_TYPES = {
    GenerationKind.IMAGE: "image/png",
    GenerationKind.VIDEO_CLIP: "video/mp4",
    GenerationKind.SPEECH: "audio/mpeg",
    GenerationKind.SCENE_VIDEO: "video/mp4",
    GenerationKind.COMPOSE: "video/mp4",
}
