"""Background worker that purges expired refresh tokens.

Runs one sweep across every user with stored refresh tokens as soon as it
starts, then again every ``interval_hours``. Store work happens in a worker
thread so a slow backend never blocks request handling.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from collabboard.logging import get_logger
from collabboard.service.auth import CleanupReport, SessionManager

logger = get_logger(__name__)

DEFAULT_INTERVAL_HOURS = 24


class CleanupService:
    """Periodic system-wide refresh token cleanup."""

    def __init__(
        self,
        sessions: SessionManager,
        *,
        interval_hours: float = DEFAULT_INTERVAL_HOURS,
    ) -> None:
        self.sessions = sessions
        self.interval_seconds = interval_hours * 60 * 60
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[CleanupReport] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop; a second call is a no-op."""
        if self._running:
            logger.warning("token_cleanup_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_cleanup_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_cleanup_stopped")

    async def run_once(self) -> Optional[CleanupReport]:
        try:
            report = await asyncio.to_thread(self.sessions.cleanup_all_expired_tokens)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "token_cleanup_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        self.last_report = report
        return report

    async def manual_cleanup(self) -> CleanupReport:
        """Run one cleanup pass now, independent of the schedule.

        Unlike the scheduled loop, failures propagate to the caller.
        """
        logger.info("token_cleanup_manual_triggered")
        report = await asyncio.to_thread(self.sessions.cleanup_all_expired_tokens)
        self.last_report = report
        return report

    async def _run_loop(self) -> None:
        try:
            while self._running:
                await self.run_once()
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("token_cleanup_task_cancelled")
            raise
