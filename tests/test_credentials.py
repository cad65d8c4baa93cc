"""Tests for credential rotation."""

import pytest

from scene_engine.domain.enums import ProviderClass
from scene_engine.domain.models import CredentialContext
from scene_engine.errors import ProviderExhausted
from scene_engine.services.credentials import CredentialRotator
from scene_engine.services.encryption import decrypt_secret, encrypt_secret, mask_secret


@pytest.fixture
def pool(session_factory) -> CredentialRotator:
    """Image pool with three keys in priority order."""
    rotator = CredentialRotator(session_factory, max_error_count=3)
    rotator.register(ProviderClass.IMAGE, "key-primary-0001", label="primary", priority=0)
    rotator.register(ProviderClass.IMAGE, "key-second-0002", label="second", priority=1)
    rotator.register(ProviderClass.IMAGE, "key-third-0003", label="third", priority=2)
    return rotator


def fail(rotator: CredentialRotator, times: int) -> None:
    for _ in range(times):
        rotator.mark_failure(ProviderClass.IMAGE, rotator.select(ProviderClass.IMAGE))


class TestSelection:
    """Test priority order, thresholds and degraded recovery."""

    def test_selects_highest_priority_healthy_key(self, pool: CredentialRotator) -> None:
        selected = pool.select(ProviderClass.IMAGE)
        assert selected.api_key == "key-primary-0001"
        assert selected.degraded is False
        assert pool.current(ProviderClass.IMAGE) == selected

    def test_skips_key_at_error_threshold(self, pool: CredentialRotator) -> None:
        fail(pool, 3)
        assert pool.select(ProviderClass.IMAGE).api_key == "key-second-0002"

    def test_degraded_recovery_when_all_keys_unhealthy(self, pool: CredentialRotator) -> None:
        fail(pool, 9)

        selected = pool.select(ProviderClass.IMAGE)

        assert selected.api_key == "key-primary-0001"
        assert selected.degraded is True
        counts = {c.label: c.error_count for c in pool.list_credentials(ProviderClass.IMAGE)}
        assert counts == {"primary": 0, "second": 3, "third": 3}

    def test_no_credentials_raises_exhausted(self, pool: CredentialRotator) -> None:
        with pytest.raises(ProviderExhausted):
            pool.select(ProviderClass.VIDEO)

    def test_pinned_personal_key_bypasses_pool(self, pool: CredentialRotator) -> None:
        context = CredentialContext(user_id="alice", personal_key="personal-key-9999")

        selected = pool.select(ProviderClass.IMAGE, context)

        assert selected.pinned is True
        assert selected.credential_id is None
        assert selected.api_key == "personal-key-9999"
        # Failures of a pinned key are not attributed to the pool
        assert pool.mark_failure(ProviderClass.IMAGE, selected) is False
        assert all(c.error_count == 0 for c in pool.list_credentials())

    def test_context_without_personal_key_uses_pool(self, pool: CredentialRotator) -> None:
        selected = pool.select(ProviderClass.IMAGE, CredentialContext(user_id="alice"))
        assert selected.pinned is False
        assert selected.api_key == "key-primary-0001"


class TestOutcomes:
    """Test success/failure bookkeeping and fallback."""

    def test_success_resets_error_count(self, pool: CredentialRotator) -> None:
        fail(pool, 2)
        pool.mark_success(ProviderClass.IMAGE)

        primary = pool.list_credentials(ProviderClass.IMAGE)[0]
        assert primary.error_count == 0
        assert primary.last_used_at is not None

    def test_mark_failure_reports_fallback_availability(
        self, session_factory
    ) -> None:
        rotator = CredentialRotator(session_factory, max_error_count=1)
        rotator.register(ProviderClass.TTS, "tts-a-key", priority=0)
        rotator.register(ProviderClass.TTS, "tts-b-key", priority=1)

        first = rotator.select(ProviderClass.TTS)
        assert rotator.mark_failure(ProviderClass.TTS, first) is True

        second = rotator.next_fallback(ProviderClass.TTS, first)
        assert second is not None
        assert second.api_key == "tts-b-key"
        assert rotator.mark_failure(ProviderClass.TTS, second) is False
        assert rotator.next_fallback(ProviderClass.TTS, second) is None

    def test_mark_failure_uses_last_selected_credential(self, pool: CredentialRotator) -> None:
        pool.select(ProviderClass.IMAGE)
        pool.mark_failure(ProviderClass.IMAGE)

        primary = pool.list_credentials(ProviderClass.IMAGE)[0]
        assert primary.error_count == 1
        assert primary.last_error_at is not None


class TestAdministration:
    """Test registration, listing and deactivation."""

    def test_keys_are_stored_encrypted_and_listed_masked(
        self, pool: CredentialRotator
    ) -> None:
        listed = pool.list_credentials(ProviderClass.IMAGE)
        assert [c.masked_key[-4:] for c in listed] == ["0001", "0002", "0003"]
        assert all("key-" not in c.masked_key for c in listed)

    def test_deactivated_key_is_never_selected(self, pool: CredentialRotator) -> None:
        primary = pool.list_credentials(ProviderClass.IMAGE)[0]
        assert pool.deactivate(primary.id) is True

        assert pool.select(ProviderClass.IMAGE).api_key == "key-second-0002"

    def test_reset_errors(self, pool: CredentialRotator) -> None:
        fail(pool, 3)
        primary = pool.list_credentials(ProviderClass.IMAGE)[0]
        assert pool.reset_errors(primary.id) is True
        assert pool.select(ProviderClass.IMAGE).api_key == "key-primary-0001"

    def test_selected_credential_repr_masks_key(self, pool: CredentialRotator) -> None:
        assert "key-primary" not in repr(pool.select(ProviderClass.IMAGE))


class TestEncryption:
    """Test the Fernet helpers."""

    def test_roundtrip(self) -> None:
        token = encrypt_secret("sk-test-123456")
        assert token != "sk-test-123456"
        assert decrypt_secret(token) == "sk-test-123456"

    def test_mask_secret(self) -> None:
        assert mask_secret("abcdefgh") == "****efgh"
        assert mask_secret("abc") == "***"
