"""Tests for the provider gateway."""

import pytest

from scene_engine.adapters.generation.base import GenerationRequest
from scene_engine.adapters.generation.stub import StubGenerationProvider
from scene_engine.domain.enums import GenerationKind, ProviderClass
from scene_engine.domain.models import CredentialContext
from scene_engine.errors import (
    ProviderContentFiltered,
    ProviderExhausted,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderTransient,
)
from scene_engine.services.credentials import CredentialRotator
from scene_engine.services.gateway import ProviderGateway


def image_request(prompt: str = "A volcano at dusk") -> GenerationRequest:
    return GenerationRequest(kind=GenerationKind.IMAGE, prompt=prompt)


def used_keys(provider: StubGenerationProvider) -> list[str]:
    return [api_key for _, api_key in provider.calls]


class TestInvoke:
    """Tests for the guarded call loop."""

    @pytest.mark.asyncio
    async def test_success(self, gateway: ProviderGateway, provider, limiters) -> None:
        result = await gateway.invoke(image_request())

        assert result.data is not None
        assert result.content_type == "image/png"
        assert used_keys(provider) == ["image-key-primary"]
        stats = limiters.get(ProviderClass.IMAGE).stats()
        assert stats.total_calls == 1
        assert stats.total_errors == 0

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried_and_slows_limiter(
        self, gateway: ProviderGateway, provider, limiters
    ) -> None:
        provider.fail(GenerationKind.IMAGE, ProviderRateLimited("429"), times=1)

        await gateway.invoke(image_request())

        assert len(provider.calls) == 2
        assert limiters.get(ProviderClass.IMAGE).current_delay_ms == pytest.approx(9000)

    @pytest.mark.asyncio
    async def test_overload_backs_off_harder(
        self, gateway: ProviderGateway, provider, limiters
    ) -> None:
        provider.fail(
            GenerationKind.IMAGE, ProviderTransient("503", overloaded=True), times=1
        )

        await gateway.invoke(image_request())

        assert limiters.get(ProviderClass.IMAGE).current_delay_ms == pytest.approx(13500)

    @pytest.mark.asyncio
    async def test_falls_back_to_next_credential(
        self, gateway: ProviderGateway, provider, rotator: CredentialRotator
    ) -> None:
        rotator.register(ProviderClass.IMAGE, "image-key-secondary", priority=1)
        provider.fail(GenerationKind.IMAGE, ProviderRateLimited("429"), times=1)

        await gateway.invoke(image_request())

        assert used_keys(provider) == ["image-key-primary", "image-key-secondary"]
        errors = {c.label: c.error_count for c in rotator.list_credentials(ProviderClass.IMAGE)}
        assert errors == {"primary": 1, None: 0}

    @pytest.mark.asyncio
    async def test_raises_last_error_after_max_attempts(
        self, gateway: ProviderGateway, provider
    ) -> None:
        provider.fail(GenerationKind.IMAGE, ProviderRateLimited("429"))

        with pytest.raises(ProviderRateLimited):
            await gateway.invoke(image_request())

        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_timeout(self, limiters, rotator: CredentialRotator) -> None:
        slow = StubGenerationProvider(delay_seconds=1.0)
        gateway = ProviderGateway(slow, limiters, rotator, timeout_seconds=0.01, max_attempts=1)

        with pytest.raises(ProviderTimeout):
            await gateway.invoke(image_request())

    @pytest.mark.asyncio
    async def test_degraded_credential_failure_exhausts(
        self, session_factory, limiters, provider
    ) -> None:
        rotator = CredentialRotator(session_factory, max_error_count=1)
        rotator.register(ProviderClass.IMAGE, "only-key")
        gateway = ProviderGateway(provider, limiters, rotator, max_attempts=5)
        provider.fail(GenerationKind.IMAGE, ProviderTransient("boom"))

        with pytest.raises(ProviderExhausted):
            await gateway.invoke(image_request())

        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_pinned_personal_key(
        self, gateway: ProviderGateway, provider, rotator: CredentialRotator
    ) -> None:
        provider.fail(GenerationKind.IMAGE, ProviderRateLimited("429"), times=1)
        context = CredentialContext(user_id="bob", personal_key="bob-personal-key")

        await gateway.invoke(image_request(), context=context)

        assert used_keys(provider) == ["bob-personal-key", "bob-personal-key"]
        assert all(c.error_count == 0 for c in rotator.list_credentials(ProviderClass.IMAGE))


class TestContentFilter:
    """Tests for safe-prompt substitution."""

    @pytest.mark.asyncio
    async def test_retries_once_with_safe_prompt(
        self, gateway: ProviderGateway, provider, limiters
    ) -> None:
        provider.fail(GenerationKind.IMAGE, ProviderContentFiltered("refused"), times=1)

        await gateway.invoke(image_request("Lava river"), safe_prompt="A calm landscape")

        prompts = [request.prompt for request in provider.calls_for(GenerationKind.IMAGE)]
        assert prompts == ["Lava river", "A calm landscape"]
        assert limiters.get(ProviderClass.IMAGE).stats().total_errors == 0

    @pytest.mark.asyncio
    async def test_raises_without_safe_prompt(self, gateway: ProviderGateway, provider) -> None:
        provider.fail(GenerationKind.IMAGE, ProviderContentFiltered("refused"))

        with pytest.raises(ProviderContentFiltered):
            await gateway.invoke(image_request())

        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_raises_when_safe_prompt_also_refused(
        self, gateway: ProviderGateway, provider
    ) -> None:
        provider.fail(GenerationKind.IMAGE, ProviderContentFiltered("refused"))

        with pytest.raises(ProviderContentFiltered):
            await gateway.invoke(image_request(), safe_prompt="Something else")

        assert len(provider.calls) == 2
