"""
Token Refresh Scheduler

Refreshes credentials with bounded exponential backoff. Transient failures
(network errors, timeouts, 5xx) are retried; a rejected refresh token is not.

With the default policy (3 retries, 2 second base, 8 second ceiling) a refresh
makes at most 4 calls to the token endpoint, sleeping 2, 4 and 8 seconds
between them.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Protocol

from dropanchor.app.config import Settings
from dropanchor.atproto.oauth import Clock, utc_now
from dropanchor.errors import AuthError
from dropanchor.model.credentials import Credentials

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RefreshGrant(Protocol):
    async def refresh_grant(self, credentials: Credentials) -> Credentials: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    """Retries after the first attempt."""

    base_delay: float = 2.0
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.max_retry_delay,
        )

    def delay(self, attempt: int) -> float:
        """
        Seconds to wait before retry number ``attempt`` (0-based).

        Exponential backoff: base_delay * 2^attempt, capped at max_delay.
        """
        return min(self.max_delay, self.base_delay * (2**attempt))


class TokenRefreshScheduler:
    """
    Decides when credentials need refreshing and performs the refresh.

    The scheduler holds no session state; the session manager owns the
    credentials and guarantees at most one refresh is in flight.
    """

    def __init__(
        self,
        token_client: RefreshGrant,
        refresh_threshold: timedelta,
        policy: Optional[RetryPolicy] = None,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._token_client = token_client
        self._refresh_threshold = refresh_threshold
        self._policy = policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep

    @property
    def refresh_threshold(self) -> timedelta:
        return self._refresh_threshold

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def needs_refresh(self, credentials: Credentials, now: Optional[datetime] = None) -> bool:
        return credentials.needs_refresh(now or self._clock(), self._refresh_threshold)

    def seconds_until_refresh(
        self, credentials: Credentials, now: Optional[datetime] = None
    ) -> float:
        """Seconds until ``credentials`` enter the refresh window; 0 if already inside."""
        remaining = credentials.refresh_at(self._refresh_threshold) - (
            now or self._clock()
        )
        return max(0.0, remaining.total_seconds())

    async def refresh(self, credentials: Credentials) -> Credentials:
        """
        Exchange the refresh token for new credentials.

        Raises:
            AuthError: ``refresh_rejected`` immediately when the token endpoint
                refuses the refresh token, or the last transient error once
                retries are exhausted.
        """
        retries = 0
        while True:
            try:
                refreshed = await self._token_client.refresh_grant(credentials)
            except AuthError as e:
                if not e.transient:
                    logger.warning(
                        f"Refresh rejected for {credentials.did}: {e.message}"
                    )
                    raise

                if retries >= self._policy.max_attempts:
                    logger.error(
                        f"Refresh for {credentials.did} failed after "
                        f"{retries + 1} attempts: {e.message}"
                    )
                    raise

                delay = self._policy.delay(retries)
                retries += 1
                logger.info(
                    f"Refresh for {credentials.did} failed ({e.reason.value}), "
                    f"retry {retries}/{self._policy.max_attempts} in {delay}s"
                )
                await self._sleep(delay)
                continue

            logger.debug(
                f"Refreshed {credentials.did}, expires at {refreshed.expires_at.isoformat()}"
            )
            return refreshed
