"""Guarded access to the generation provider.

Every external generation call goes through ``ProviderGateway.invoke``:

1. wait on the shared rate limiter of the call's provider class
2. select a credential (pinned personal key, pooled key or fallback)
3. run the call under a bounded timeout
4. feed the outcome back into the limiter and the credential pool

Rate-limit and transient errors are retried up to ``max_attempts`` with
credential fallback. A content-filter refusal is retried once with the
caller's safe prompt.
"""

import asyncio
from dataclasses import replace

from scene_engine.adapters.generation.base import (
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
)
from scene_engine.config import settings
from scene_engine.domain.models import CredentialContext
from scene_engine.errors import (
    ProviderContentFiltered,
    ProviderError,
    ProviderExhausted,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderTransient,
)
from scene_engine.logging import get_logger
from scene_engine.services.credentials import CredentialRotator, SelectedCredential
from scene_engine.services.rate_limiter import RateLimiterRegistry
from scene_engine.utils.async_utils import with_timeout

logger = get_logger(__name__)


class ProviderGateway:
    """Rate-limited, credential-rotating wrapper around a generation provider."""

    def __init__(
        self,
        provider: GenerationProvider,
        limiters: RateLimiterRegistry,
        rotator: CredentialRotator,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.provider = provider
        self.limiters = limiters
        self.rotator = rotator
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.provider_timeout_seconds
        )
        self.max_attempts = max_attempts or settings.provider_max_attempts

    async def _call(self, request: GenerationRequest, credential: SelectedCredential) -> GenerationResult:
        try:
            return await with_timeout(
                self.provider.generate(request, credential.api_key), self.timeout_seconds
            )
        except TimeoutError as e:
            raise ProviderTimeout(self.timeout_seconds) from e

    async def invoke(
        self,
        request: GenerationRequest,
        context: CredentialContext | None = None,
        safe_prompt: str | None = None,
    ) -> GenerationResult:
        """Run one logical generation call.

        Raises:
            ProviderContentFiltered: If the prompt (and safe prompt) is refused.
            ProviderExhausted: If no usable credential remains.
            ProviderError: The last retryable error once attempts run out, or
                a non-retryable provider error.
        """
        provider_class = request.kind.provider_class
        limiter = self.limiters.get(provider_class)
        credential: SelectedCredential | None = None
        used_safe_prompt = False
        last_error: ProviderError | None = None
        attempt = 0

        while attempt < self.max_attempts:
            await asyncio.to_thread(limiter.wait_if_needed)
            if credential is None:
                credential = self.rotator.select(provider_class, context)
                if credential.degraded:
                    logger.warning(
                        "provider_call_degraded_credential",
                        provider_class=str(provider_class),
                        credential_id=str(credential.credential_id),
                    )

            try:
                result = await self._call(request, credential)
            except ProviderContentFiltered as e:
                # Refusals say nothing about credential health or load
                if safe_prompt is None or used_safe_prompt:
                    raise
                logger.warning(
                    "provider_content_filtered",
                    kind=str(request.kind),
                    error=str(e),
                    fallback="safe_prompt",
                )
                request = replace(request, prompt=safe_prompt)
                used_safe_prompt = True
                continue
            except (ProviderRateLimited, ProviderTransient) as e:
                attempt += 1
                last_error = e
                if isinstance(e, ProviderTransient) and e.overloaded:
                    limiter.record_severe_error()
                else:
                    limiter.record_error()

                has_fallback = self.rotator.mark_failure(provider_class, credential)
                logger.warning(
                    "provider_call_failed",
                    kind=str(request.kind),
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                    has_fallback=has_fallback,
                )

                if credential.pinned:
                    continue
                if has_fallback:
                    credential = self.rotator.next_fallback(provider_class, credential)
                elif credential.degraded:
                    raise ProviderExhausted(
                        f"All '{provider_class}' credentials failed, including degraded recovery: {e}"
                    ) from e
                else:
                    credential = None
                continue

            limiter.record_success()
            self.rotator.mark_success(provider_class, credential)
            return result

        raise last_error or ProviderExhausted(
            f"No attempt left for '{provider_class}' (max_attempts={self.max_attempts})"
        )
