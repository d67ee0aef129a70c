"""Background task that expires idle sessions on a fixed interval.

Each pass only marks rows inactive (and purges rows past the retention
window), so a pass can be repeated, skipped or interrupted without harm.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from vihara.logging import get_logger
from vihara.service.sessions import SessionManager

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 300
MAX_BACKOFF_SECONDS = 3600


class SessionSweeper:
    def __init__(
        self,
        sessions: SessionManager,
        *,
        interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.sessions = sessions
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("session_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_sweeper_stopped")

    def run_once(self) -> dict:
        expired = self.sessions.sweep_expired()
        purged = self.sessions.purge_inactive()
        return {"expired": expired, "purged": purged}

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                result = await asyncio.to_thread(self.run_once)
                consecutive_errors = 0
                if result["expired"] or result["purged"]:
                    logger.info("session_sweep_completed", **result)
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval_seconds * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "session_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval_seconds)
