"""Rate limiting service over the sliding-window script.

Each subject (user or session) owns a sorted set of request timestamps.
Purge, count and admit happen in one atomic step, so concurrent callers
cannot both slip past the limit.
"""

import time
from collections.abc import Callable
from functools import lru_cache

from chatcache.core.config import Settings, get_settings
from chatcache.core.exceptions import ScriptExecutionError
from chatcache.core.logging import get_logger
from chatcache.services.scripts import AtomicScripts, RateLimitDecision, get_atomic_scripts
from chatcache.services.store import KEY_PREFIX_RATE, make_key

logger = get_logger(__name__)


class RateLimitService:
    """Per-user and per-session sliding window limits."""

    def __init__(
        self,
        scripts: AtomicScripts | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize rate limit service."""
        settings = settings or get_settings()
        self._scripts = scripts or get_atomic_scripts()
        self._clock = clock
        self._enabled = settings.rate_limit_enabled
        self._user_limit = settings.rate_limit_requests_per_minute
        self._session_limit = settings.rate_limit_session_requests_per_minute
        self._window_seconds = settings.rate_limit_window_seconds

        if self._enabled:
            logger.info(
                "Rate limiting initialized",
                user_limit=self._user_limit,
                session_limit=self._session_limit,
                window_seconds=self._window_seconds,
            )
        else:
            logger.info("Rate limiting disabled")

    @property
    def is_enabled(self) -> bool:
        """Check if rate limiting is enabled."""
        return self._enabled

    async def check(
        self,
        key: str,
        limit: int,
        window_seconds: float | None = None,
        *,
        fail_closed: bool = False,
    ) -> RateLimitDecision:
        """Check and consume one request against ``key``.

        Args:
            key: Store key for the request window
            limit: Maximum requests allowed in the window
            window_seconds: Window length; defaults to the configured window
            fail_closed: Reject instead of admitting when the script fails

        Returns:
            The admit/reject decision; ``remaining`` is -1 when unchecked
        """
        if not self._enabled:
            return RateLimitDecision(True, -1)

        window = window_seconds or self._window_seconds
        try:
            return await self._scripts.check_rate_limit(key, window, limit, self._clock())
        except ScriptExecutionError as e:
            logger.warning("Rate limit check failed", key=key, error=e.message)
            if fail_closed:
                return RateLimitDecision(False, 0, int(window))
            return RateLimitDecision(True, -1)

    async def check_user_limit(self, user_id: str) -> RateLimitDecision:
        return await self.check(make_key(KEY_PREFIX_RATE, "user", user_id), self._user_limit)

    async def check_session_limit(self, session_id: str) -> RateLimitDecision:
        return await self.check(make_key(KEY_PREFIX_RATE, "session", session_id), self._session_limit)


@lru_cache
def get_rate_limit_service() -> RateLimitService:
    """Get or create the rate limit service instance (cached)."""
    return RateLimitService()
