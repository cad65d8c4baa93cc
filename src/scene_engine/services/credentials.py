"""Credential rotation across a prioritized pool of API keys.

Each provider has a pool of interchangeable credentials ordered by
``priority`` (lower first). A credential with ``error_count`` at or above the
threshold is skipped. When every credential is over the threshold, the
highest-priority one is reset and handed out anyway, flagged as degraded.

A personal key carried by a ``CredentialContext`` bypasses the pool.
"""

import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from scene_engine.config import settings
from scene_engine.db.models import CredentialModel
from scene_engine.db.session import SessionLocal, session_scope
from scene_engine.domain.enums import ProviderClass
from scene_engine.domain.models import CredentialContext
from scene_engine.errors import ProviderExhausted
from scene_engine.logging import get_logger
from scene_engine.services.encryption import decrypt_secret, encrypt_secret, mask_secret

logger = get_logger(__name__)


@dataclass(frozen=True)
class SelectedCredential:
    """A decrypted credential handed to one provider call.

    ``degraded`` marks a credential returned by degraded recovery: it had been
    skipped as unhealthy and was reset only because nothing else was left.
    ``pinned`` marks a personal key that is not part of the pool.
    """

    credential_id: UUID | None
    provider: str
    api_key: str
    degraded: bool = False
    pinned: bool = False

    def __repr__(self) -> str:
        return (
            f"SelectedCredential(credential_id={self.credential_id}, provider={self.provider!r}, "
            f"api_key={mask_secret(self.api_key)!r}, degraded={self.degraded}, pinned={self.pinned})"
        )


@dataclass
class CredentialInfo:
    """Masked view of a pooled credential for listings."""

    id: UUID
    provider: str
    label: str | None
    masked_key: str
    priority: int
    is_active: bool
    error_count: int
    last_used_at: datetime | None
    last_error_at: datetime | None


class CredentialRotator:
    """Health-based credential selection with fallback.

    Every read and write is its own short transaction. The rotator remembers
    which credential it last handed out per provider so that
    ``mark_success``/``mark_failure`` can be called with just the provider.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        max_error_count: int | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self.max_error_count = (
            max_error_count if max_error_count is not None else settings.credential_max_error_count
        )
        self._attributed: dict[str, SelectedCredential] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    def _active_pool(self, session: Session, provider: str) -> list[CredentialModel]:
        return list(
            session.execute(
                select(CredentialModel)
                .where(
                    CredentialModel.provider == provider,
                    CredentialModel.is_active.is_(True),
                )
                .order_by(CredentialModel.priority.asc(), CredentialModel.created_at.asc())
            ).scalars()
        )

    def _attribute(self, credential: SelectedCredential) -> SelectedCredential:
        with self._lock:
            self._attributed[credential.provider] = credential
        return credential

    def current(self, provider: ProviderClass | str) -> SelectedCredential | None:
        """Credential most recently handed out for ``provider``."""
        with self._lock:
            return self._attributed.get(str(provider))

    def select(
        self,
        provider: ProviderClass | str,
        context: CredentialContext | None = None,
    ) -> SelectedCredential:
        """Pick the credential for the next call to ``provider``.

        Raises:
            ProviderExhausted: If the provider has no active credentials.
        """
        provider = str(provider)
        if context is not None and context.is_pinned:
            return SelectedCredential(
                credential_id=None,
                provider=provider,
                api_key=context.personal_key or "",
                pinned=True,
            )

        with session_scope(self._session_factory) as session:
            pool = self._active_pool(session, provider)
            if not pool:
                raise ProviderExhausted(f"No active credentials configured for '{provider}'")

            for row in pool:
                if row.error_count < self.max_error_count:
                    return self._attribute(
                        SelectedCredential(
                            credential_id=row.id,
                            provider=provider,
                            api_key=decrypt_secret(row.encrypted_key),
                        )
                    )

            head = pool[0]
            head.error_count = 0
            logger.warning(
                "credential_degraded_recovery",
                provider=provider,
                credential_id=str(head.id),
                pool_size=len(pool),
            )
            return self._attribute(
                SelectedCredential(
                    credential_id=head.id,
                    provider=provider,
                    api_key=decrypt_secret(head.encrypted_key),
                    degraded=True,
                )
            )

    def _resolve(
        self, provider: ProviderClass | str, credential: SelectedCredential | None
    ) -> SelectedCredential | None:
        return credential if credential is not None else self.current(provider)

    def mark_success(
        self,
        provider: ProviderClass | str,
        credential: SelectedCredential | None = None,
    ) -> None:
        """Reset the error count of the credential that just succeeded."""
        credential = self._resolve(provider, credential)
        if credential is None or credential.credential_id is None:
            return

        with session_scope(self._session_factory) as session:
            row = session.get(CredentialModel, credential.credential_id)
            if row is None:
                return
            row.error_count = 0
            row.last_used_at = self._now()

    def mark_failure(
        self,
        provider: ProviderClass | str,
        credential: SelectedCredential | None = None,
    ) -> bool:
        """Count a failure against the credential that was used.

        Returns True if another credential under the threshold exists, i.e.
        an immediate fallback retry is worthwhile.
        """
        provider = str(provider)
        credential = self._resolve(provider, credential)
        if credential is None or credential.credential_id is None:
            return False

        with session_scope(self._session_factory) as session:
            row = session.get(CredentialModel, credential.credential_id)
            if row is not None:
                row.error_count += 1
                row.last_error_at = self._now()
                logger.warning(
                    "credential_failure_recorded",
                    provider=provider,
                    credential_id=str(row.id),
                    error_count=row.error_count,
                )
            session.flush()
            return any(
                other.id != credential.credential_id and other.error_count < self.max_error_count
                for other in self._active_pool(session, provider)
            )

    def next_fallback(
        self,
        provider: ProviderClass | str,
        current: SelectedCredential | None = None,
    ) -> SelectedCredential | None:
        """Next eligible credential other than ``current``, or None."""
        provider = str(provider)
        current = self._resolve(provider, current)
        exclude = current.credential_id if current is not None else None

        with session_scope(self._session_factory) as session:
            for row in self._active_pool(session, provider):
                if row.id == exclude or row.error_count >= self.max_error_count:
                    continue
                logger.info(
                    "credential_fallback",
                    provider=provider,
                    from_credential=str(exclude) if exclude else None,
                    to_credential=str(row.id),
                )
                return self._attribute(
                    SelectedCredential(
                        credential_id=row.id,
                        provider=provider,
                        api_key=decrypt_secret(row.encrypted_key),
                    )
                )
        return None

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def register(
        self,
        provider: ProviderClass | str,
        api_key: str,
        label: str | None = None,
        priority: int = 0,
    ) -> UUID:
        """Add a credential to the pool and return its id."""
        with session_scope(self._session_factory) as session:
            row = CredentialModel(
                provider=str(provider),
                label=label,
                encrypted_key=encrypt_secret(api_key),
                priority=priority,
                is_active=True,
                error_count=0,
            )
            session.add(row)
            session.flush()
            logger.info(
                "credential_registered",
                provider=str(provider),
                credential_id=str(row.id),
                priority=priority,
            )
            return row.id

    def set_active(self, credential_id: UUID, active: bool) -> bool:
        """Activate or deactivate a credential. Returns False if unknown."""
        with session_scope(self._session_factory) as session:
            row = session.get(CredentialModel, credential_id)
            if row is None:
                return False
            row.is_active = active
            logger.info("credential_active_changed", credential_id=str(credential_id), active=active)
            return True

    def deactivate(self, credential_id: UUID) -> bool:
        """Remove a credential from rotation without deleting it."""
        return self.set_active(credential_id, False)

    def reset_errors(self, credential_id: UUID) -> bool:
        """Clear the error count of a credential. Returns False if unknown."""
        with session_scope(self._session_factory) as session:
            row = session.get(CredentialModel, credential_id)
            if row is None:
                return False
            row.error_count = 0
            return True

    def list_credentials(self, provider: ProviderClass | str | None = None) -> list[CredentialInfo]:
        """List pooled credentials with their keys masked."""
        with session_scope(self._session_factory) as session:
            query = select(CredentialModel).order_by(
                CredentialModel.provider, CredentialModel.priority
            )
            if provider is not None:
                query = query.where(CredentialModel.provider == str(provider))
            return [
                CredentialInfo(
                    id=row.id,
                    provider=row.provider,
                    label=row.label,
                    masked_key=mask_secret(decrypt_secret(row.encrypted_key)),
                    priority=row.priority,
                    is_active=row.is_active,
                    error_count=row.error_count,
                    last_used_at=row.last_used_at,
                    last_error_at=row.last_error_at,
                )
                for row in session.execute(query).scalars()
            ]
