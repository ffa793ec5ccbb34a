"""Periodic sweep of stale activity rankings and idle sessions."""

import asyncio
from dataclasses import dataclass

from redis.exceptions import RedisError

from chatcache.core.config import Settings, get_settings
from chatcache.core.exceptions import AppException
from chatcache.core.logging import get_logger
from chatcache.core.tasks import create_background_task
from chatcache.services.activity import ActivityTracker, get_activity_tracker
from chatcache.services.sessions import SessionService, get_session_service

logger = get_logger(__name__)


@dataclass
class SweepReport:
    sessions_removed: int = 0
    users_removed: int = 0
    sessions_purged: int = 0
    sessions_expired: int = 0


class StaleSweeper:
    """Runs ``run_once`` every ``sweep_interval_seconds`` until stopped."""

    def __init__(
        self,
        activity: ActivityTracker | None = None,
        sessions: SessionService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.activity = activity or get_activity_tracker()
        self.sessions = sessions or get_session_service()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, threshold_seconds: float | None = None) -> SweepReport:
        threshold = (
            self.settings.stale_threshold_seconds if threshold_seconds is None else threshold_seconds
        )
        result = await self.activity.sweep_stale(threshold)
        purged = await self.sessions.purge_sessions(result.session_ids)
        expired = await self.sessions.cleanup_inactive(threshold)
        return SweepReport(
            sessions_removed=result.sessions_removed,
            users_removed=result.users_removed,
            sessions_purged=purged,
            sessions_expired=expired,
        )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            try:
                report = await self.run_once()
            except (AppException, RedisError) as e:
                # Next cycle retries
                logger.warning("Sweep cycle failed", error=str(e))
                continue
            logger.debug("Sweep cycle finished", **report.__dict__)

    def start(self) -> None:
        if self.running:
            return
        self._task = create_background_task(self._loop(), name="stale-sweeper")
        logger.info("Stale sweeper started", interval=self.settings.sweep_interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stale sweeper stopped")
