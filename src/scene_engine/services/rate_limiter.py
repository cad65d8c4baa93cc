"""Adaptive rate limiting for external generation providers.

One ``AdaptiveRateLimiter`` exists per provider class (image, tts, video,
scenario) for the lifetime of the process. It enforces a minimum delay
between consecutive calls and tunes that delay itself:

- a streak of successes shrinks the delay toward ``min_delay_ms``
- every error grows it toward ``max_delay_ms``
- overload signals (HTTP 503) grow it by an extra 1.5x

Parameters come from the ``rate_limit_configs`` table when a row exists,
otherwise from settings, and are cached with an explicit TTL.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from scene_engine.config import settings
from scene_engine.db.models import RateLimitConfigModel
from scene_engine.db.session import session_scope
from scene_engine.domain.enums import ProviderClass
from scene_engine.logging import get_logger
from scene_engine.utils.cache import TTLCache

logger = get_logger(__name__)

SEVERE_ERROR_FACTOR = 1.5


@dataclass(frozen=True)
class RateLimiterConfig:
    """Tuning parameters for one adaptive rate limiter."""

    initial_delay_ms: float
    min_delay_ms: float
    max_delay_ms: float
    success_decrease_ratio: float = 0.9
    error_increase_ratio: float = 1.5
    success_streak: int = 3

    def __post_init__(self) -> None:
        if self.min_delay_ms < 0 or self.min_delay_ms > self.max_delay_ms:
            raise ValueError("require 0 <= min_delay_ms <= max_delay_ms")
        if not 0 < self.success_decrease_ratio <= 1:
            raise ValueError("success_decrease_ratio must be in (0, 1]")
        if self.error_increase_ratio < 1:
            raise ValueError("error_increase_ratio must be >= 1")
        if self.success_streak < 1:
            raise ValueError("success_streak must be >= 1")

    @classmethod
    def from_settings(cls) -> "RateLimiterConfig":
        return cls(
            initial_delay_ms=settings.rate_limit_initial_delay_ms,
            min_delay_ms=settings.rate_limit_min_delay_ms,
            max_delay_ms=settings.rate_limit_max_delay_ms,
            success_decrease_ratio=settings.rate_limit_success_decrease_ratio,
            error_increase_ratio=settings.rate_limit_error_increase_ratio,
            success_streak=settings.rate_limit_success_streak,
        )

    @classmethod
    def from_model(cls, row: RateLimitConfigModel) -> "RateLimiterConfig":
        return cls(
            initial_delay_ms=row.initial_delay_ms,
            min_delay_ms=row.min_delay_ms,
            max_delay_ms=row.max_delay_ms,
            success_decrease_ratio=row.success_decrease_ratio,
            error_increase_ratio=row.error_increase_ratio,
            success_streak=row.success_streak,
        )


@dataclass
class RateLimiterStats:
    """Point-in-time counters of a limiter."""

    name: str
    current_delay_ms: float
    success_streak: int
    total_calls: int
    total_errors: int
    total_wait_ms: float

    @property
    def error_rate(self) -> float:
        return self.total_errors / self.total_calls if self.total_calls else 0.0

    @property
    def average_wait_ms(self) -> float:
        return self.total_wait_ms / self.total_calls if self.total_calls else 0.0


class AdaptiveRateLimiter:
    """Self-tuning minimum delay between consecutive provider calls.

    Thread-safe. Concurrent callers reserve consecutive call slots under the
    lock and sleep outside it, so parallel workers sharing one instance are
    still paced ``current_delay_ms`` apart.
    """

    def __init__(
        self,
        name: str,
        config: RateLimiterConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        self._current_delay_ms = self._clamp(config.initial_delay_ms)
        # Virtual previous call so the very first call is paced as well
        self._last_call_ms = self._now_ms() - config.initial_delay_ms
        self._success_streak = 0
        self._total_calls = 0
        self._total_errors = 0
        self._total_wait_ms = 0.0

        logger.info(
            "rate_limiter_initialized",
            limiter=name,
            delay_ms=self._current_delay_ms,
            min_delay_ms=config.min_delay_ms,
            max_delay_ms=config.max_delay_ms,
        )

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _clamp(self, delay_ms: float) -> float:
        return max(self._config.min_delay_ms, min(self._config.max_delay_ms, delay_ms))

    @property
    def config(self) -> RateLimiterConfig:
        return self._config

    @property
    def current_delay_ms(self) -> float:
        with self._lock:
            return self._current_delay_ms

    def wait_if_needed(self) -> float:
        """Block until ``current_delay_ms`` has passed since the previous call.

        Records the new call time before returning. Returns the milliseconds
        waited.
        """
        with self._lock:
            now = self._now_ms()
            slot = max(now, self._last_call_ms + self._current_delay_ms)
            self._last_call_ms = slot
            wait_ms = slot - now
            self._total_calls += 1
            self._total_wait_ms += wait_ms

        if wait_ms > 0:
            logger.debug("rate_limiter_waiting", limiter=self.name, wait_ms=round(wait_ms, 1))
            self._sleep(wait_ms / 1000.0)
        return wait_ms

    def record_success(self) -> None:
        """Count a success; after a full streak, shrink the delay."""
        with self._lock:
            self._success_streak += 1
            if self._success_streak < self._config.success_streak:
                return
            old_delay = self._current_delay_ms
            self._current_delay_ms = max(
                self._config.min_delay_ms, old_delay * self._config.success_decrease_ratio
            )
            self._success_streak = 0
            new_delay = self._current_delay_ms

        if new_delay < old_delay:
            logger.info(
                "rate_limiter_delay_decreased",
                limiter=self.name,
                old_delay_ms=old_delay,
                new_delay_ms=new_delay,
            )

    def record_error(self) -> None:
        """Count an ordinary error (e.g. HTTP 429) and grow the delay."""
        self._grow(self._config.error_increase_ratio, severe=False)

    def record_severe_error(self) -> None:
        """Count an overload error (e.g. HTTP 503) and grow the delay harder."""
        self._grow(self._config.error_increase_ratio * SEVERE_ERROR_FACTOR, severe=True)

    def _grow(self, factor: float, severe: bool) -> None:
        with self._lock:
            self._success_streak = 0
            self._total_errors += 1
            old_delay = self._current_delay_ms
            self._current_delay_ms = min(self._config.max_delay_ms, old_delay * factor)
            new_delay = self._current_delay_ms

        logger.warning(
            "rate_limiter_delay_increased",
            limiter=self.name,
            severe=severe,
            old_delay_ms=old_delay,
            new_delay_ms=new_delay,
        )

    def set_delay(self, delay_ms: float) -> None:
        """Set the delay manually (clamped to bounds)."""
        with self._lock:
            self._current_delay_ms = self._clamp(delay_ms)
            bounded = self._current_delay_ms
        logger.info("rate_limiter_delay_set", limiter=self.name, delay_ms=bounded)

    def apply_config(self, config: RateLimiterConfig) -> None:
        """Swap in new parameters, keeping the adaptive state where possible."""
        with self._lock:
            initial_changed = config.initial_delay_ms != self._config.initial_delay_ms
            self._config = config
            if initial_changed:
                self._current_delay_ms = self._clamp(config.initial_delay_ms)
            else:
                self._current_delay_ms = self._clamp(self._current_delay_ms)
            self._success_streak = 0

    def reset_stats(self) -> None:
        with self._lock:
            self._total_calls = 0
            self._total_errors = 0
            self._total_wait_ms = 0.0
            self._success_streak = 0

    def stats(self) -> RateLimiterStats:
        with self._lock:
            return RateLimiterStats(
                name=self.name,
                current_delay_ms=self._current_delay_ms,
                success_streak=self._success_streak,
                total_calls=self._total_calls,
                total_errors=self._total_errors,
                total_wait_ms=self._total_wait_ms,
            )


class RateLimiterRegistry:
    """Process-wide limiter instances, one per provider class.

    Configuration rows are read through a TTL cache; ``refresh`` drops the
    cache and pushes changed parameters into the live limiters.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        cache: TTLCache[str, RateLimiterConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache or TTLCache(
            capacity=settings.rate_limit_config_cache_size,
            ttl_seconds=settings.rate_limit_config_cache_ttl,
        )
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[str, AdaptiveRateLimiter] = {}
        self._lock = threading.Lock()

    def _load_config(self, provider_class: str) -> RateLimiterConfig:
        if self._session_factory is None:
            return RateLimiterConfig.from_settings()

        with session_scope(self._session_factory) as session:
            row = session.execute(
                select(RateLimitConfigModel).where(
                    RateLimitConfigModel.provider_class == provider_class,
                    RateLimitConfigModel.is_active.is_(True),
                )
            ).scalar_one_or_none()
            if row is None:
                logger.debug("rate_limit_config_default", provider_class=provider_class)
                return RateLimiterConfig.from_settings()
            return RateLimiterConfig.from_model(row)

    def config_for(self, provider_class: ProviderClass | str) -> RateLimiterConfig:
        return self._cache.get_or_load(str(provider_class), self._load_config)

    def get(self, provider_class: ProviderClass | str) -> AdaptiveRateLimiter:
        """Return the shared limiter for ``provider_class``, creating it once."""
        key = str(provider_class)
        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is not None:
                return limiter
        config = self.config_for(key)
        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                limiter = AdaptiveRateLimiter(key, config, clock=self._clock, sleep=self._sleep)
                self._limiters[key] = limiter
            return limiter

    def refresh(self) -> None:
        """Reload configuration and apply it to existing limiters."""
        self._cache.clear()
        with self._lock:
            limiters = dict(self._limiters)
        for key, limiter in limiters.items():
            config = self.config_for(key)
            if config != limiter.config:
                limiter.apply_config(config)
                logger.info("rate_limiter_reconfigured", limiter=key, config=str(config))
        logger.info("rate_limit_configs_refreshed", limiters=len(limiters))

    def invalidate(self, provider_class: ProviderClass | str) -> None:
        """Drop one cached configuration row."""
        self._cache.invalidate(str(provider_class))

    def all_stats(self) -> list[RateLimiterStats]:
        with self._lock:
            limiters = list(self._limiters.values())
        return [limiter.stats() for limiter in limiters]


def upsert_rate_limit_config(
    session: Session,
    provider_class: ProviderClass | str,
    config: RateLimiterConfig,
    description: str | None = None,
) -> RateLimitConfigModel:
    """Create or update the configuration row for a provider class."""
    row = session.execute(
        select(RateLimitConfigModel).where(
            RateLimitConfigModel.provider_class == str(provider_class)
        )
    ).scalar_one_or_none()
    if row is None:
        row = RateLimitConfigModel(provider_class=str(provider_class), is_active=True)
        session.add(row)
    row.initial_delay_ms = int(config.initial_delay_ms)
    row.min_delay_ms = int(config.min_delay_ms)
    row.max_delay_ms = int(config.max_delay_ms)
    row.success_decrease_ratio = config.success_decrease_ratio
    row.error_increase_ratio = config.error_increase_ratio
    row.success_streak = config.success_streak
    if description is not None:
        row.description = description
    session.flush()
    return row


__all__ = [
    "AdaptiveRateLimiter",
    "RateLimiterConfig",
    "RateLimiterRegistry",
    "RateLimiterStats",
    "upsert_rate_limit_config",
]
