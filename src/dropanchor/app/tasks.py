import asyncio
import contextlib
import logging
from typing import NoReturn, Optional

import sentry_sdk

from dropanchor.atproto.oauth import Clock, utc_now
from dropanchor.atproto.refresh import Sleep
from dropanchor.atproto.session import SessionManager
from dropanchor.errors import AuthError

logger = logging.getLogger(__name__)


class ProactiveRefreshTask:
    """
    Background task that refreshes the session before its token enters the
    refresh window, so ``current_token()`` rarely has to wait on the network.

    It sleeps until the token is due, never longer than ``idle_interval`` so a
    new login is noticed, and never shorter than ``min_interval``.
    """

    def __init__(
        self,
        session: SessionManager,
        idle_interval: float = 60.0,
        min_interval: float = 1.0,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._session = session
        self._idle_interval = idle_interval
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        snapshot = self._session.snapshot()
        if snapshot.expires_at is None:
            return self._idle_interval

        refresh_at = snapshot.expires_at - self._session.scheduler.refresh_threshold
        remaining = (refresh_at - self._clock()).total_seconds()
        return min(self._idle_interval, max(self._min_interval, remaining))

    async def tick(self) -> bool:
        """Run one refresh check. Returns True if a refresh happened."""
        try:
            return await self._session.refresh_if_needed()
        except AuthError as e:
            logger.warning(f"Proactive refresh failed: {e.message}")
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error during proactive refresh")
        return False

    async def run(self) -> NoReturn:
        logger.info("Starting proactive refresh task")
        while True:
            await self._sleep(self.next_delay())
            if await self.tick():
                logger.debug("Session refreshed ahead of expiry")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name="proactive-refresh")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Stopped proactive refresh task")
