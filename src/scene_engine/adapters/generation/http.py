"""HTTP generation provider.

Talks to a JSON generation service exposing ``POST {base_url}/generate/{kind}``.
The response carries one of ``url``, ``data_b64`` or ``text`` plus optional
``duration_seconds`` and ``content_type``.
"""

import base64
from typing import Any

import httpx

from scene_engine.adapters.generation.base import (
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
)
from scene_engine.errors import (
    ProviderContentFiltered,
    ProviderError,
    ProviderRateLimited,
    ProviderTransient,
)
from scene_engine.logging import get_logger

logger = get_logger(__name__)

CONTENT_FILTER_CODES = {"content_filtered", "safety", "content_policy_violation"}


class HttpGenerationProvider(GenerationProvider):
    """Generation provider backed by an HTTP JSON API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return "http"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def generate(self, request: GenerationRequest, api_key: str) -> GenerationResult:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        payload = {"prompt": request.prompt, "params": request.params}
        url = f"{self.base_url}/generate/{request.kind}"

        try:
            async with self._client() as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise ProviderTransient(f"Generation request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderTransient(f"Generation service unreachable: {e}") from e

        if response.status_code >= 400:
            raise self._classify(response)

        data = response.json()
        logger.debug(
            "http_generation_completed",
            kind=str(request.kind),
            status_code=response.status_code,
        )
        return self._to_result(data)

    def _classify(self, response: httpx.Response) -> ProviderError:
        """Map an error response onto the provider error taxonomy."""
        status = response.status_code
        detail = _error_detail(response)

        if status == 429:
            return ProviderRateLimited(f"Rate limited by provider: {detail}")
        if status == 503:
            return ProviderTransient(f"Provider overloaded: {detail}", overloaded=True)
        if status >= 500:
            return ProviderTransient(f"Provider error {status}: {detail}")
        if _error_code(response) in CONTENT_FILTER_CODES:
            return ProviderContentFiltered(f"Prompt rejected by content filter: {detail}")
        return ProviderError(f"Provider rejected request ({status}): {detail}")

    @staticmethod
    def _to_result(data: dict[str, Any]) -> GenerationResult:
        raw = data.get("data_b64")
        return GenerationResult(
            data=base64.b64decode(raw) if raw else None,
            url=data.get("url"),
            text=data.get("text"),
            content_type=data.get("content_type"),
            duration_seconds=data.get("duration_seconds"),
            metadata=data.get("metadata") or {},
        )

    async def health_check(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_code(response: httpx.Response) -> str | None:
    error = _error_body(response).get("error")
    if isinstance(error, dict):
        return error.get("code")
    return error if isinstance(error, str) else None


def _error_detail(response: httpx.Response) -> str:
    body = _error_body(response)
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if body.get("message"):
        return str(body["message"])
    return response.text[:200]
