"""
Expiry Sweeper — fails sessions whose deadline has passed.

Runs as a background task inside the FastAPI lifespan. A session that never
hears back from its responder still reaches a terminal state: the next sweep
after its deadline marks it failed with category `timeout`.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Optional

from core.sessions import SessionManager

logger = structlog.get_logger()


class ExpirySweeper:
    """
    Periodically expires overdue sessions.

    Configure the interval in settings:
        automation:
          sweep_interval_seconds: 60
    """

    def __init__(self, sessions: SessionManager, interval_seconds: float = 60):
        self.sessions = sessions
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the sweep loop as a background task."""
        if self._task and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="expiry_sweeper")
        logger.info("expiry_sweeper_started", interval_s=self.interval_seconds)

    async def stop(self) -> None:
        """Gracefully stop the sweeper."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("expiry_sweeper_stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _sweep_loop(self) -> None:
        """Main loop — runs until stopped."""
        while self._running:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("sweep_cycle_error", error=str(e))

            await asyncio.sleep(self.interval_seconds)

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Fail every non-terminal session past its deadline.

        Returns how many sessions this call transitioned; sessions finished
        concurrently by someone else are not counted.
        """
        now = now or datetime.now(timezone.utc)
        expired = await self.sessions.store.list_expired_sessions(now)

        transitioned = 0
        for session in expired:
            try:
                if await self.sessions.expire(session.id):
                    transitioned += 1
                    logger.warning("session_expired", session_id=session.id,
                                   profile_id=session.profile_id,
                                   expires_at=session.expires_at.isoformat())
            except Exception as e:
                logger.error("session_expire_failed", session_id=session.id, error=str(e))

        if transitioned:
            logger.info("sweep_complete", expired=transitioned, candidates=len(expired))
        return transitioned
