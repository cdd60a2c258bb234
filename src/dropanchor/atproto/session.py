"""
Session Manager

Owns the credentials of one signed-in account and hands out access tokens that
are never known to be stale.

State machine:

    unauthenticated --login--> authenticating --ok--> authenticated
    authenticated --token inside refresh window or 401--> refreshing
    refreshing --ok--> authenticated
    refreshing --rejected or retries exhausted--> expired (credentials cleared)
    any --sign_out--> unauthenticated

Refreshes are single-flight: every caller that needs a refresh while one is
running awaits the same task, so the token endpoint sees one refresh no matter
how many requests are waiting. Cancelling a waiting caller does not cancel the
shared refresh.

Observers call ``snapshot()`` or ``subscribe()`` to be notified with an
immutable SessionSnapshot after every state change.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Protocol

import sentry_sdk

from dropanchor.app.metrics import MetricsClient, NoOpMetricsClient
from dropanchor.atproto.oauth import Clock, utc_now
from dropanchor.atproto.refresh import TokenRefreshScheduler
from dropanchor.atproto.store import CredentialStore
from dropanchor.errors import AuthError, AuthFailure, StorageError
from dropanchor.model.credentials import Credentials
from dropanchor.model.session import SessionSnapshot, SessionState

logger = logging.getLogger(__name__)

SessionListener = Callable[[SessionSnapshot], None]


class PasswordGrant(Protocol):
    async def password_grant(self, handle: str, password: str) -> Credentials: ...


class SessionManager:
    def __init__(
        self,
        token_client: PasswordGrant,
        store: CredentialStore,
        scheduler: TokenRefreshScheduler,
        clock: Clock = utc_now,
        metrics: Optional[MetricsClient] = None,
    ) -> None:
        self._token_client = token_client
        self._store = store
        self._scheduler = scheduler
        self._clock = clock
        self._metrics = metrics or NoOpMetricsClient()

        self._credentials: Optional[Credentials] = None
        self._state = SessionState.unauthenticated
        self._refresh_tasks: Dict[str, asyncio.Task[Credentials]] = {}
        self._listeners: List[SessionListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def scheduler(self) -> TokenRefreshScheduler:
        return self._scheduler

    def snapshot(self) -> SessionSnapshot:
        credentials = self._credentials
        if credentials is None:
            return SessionSnapshot(state=self._state)
        return SessionSnapshot(
            state=self._state,
            handle=credentials.handle,
            did=credentials.did,
            expires_at=credentials.expires_at,
        )

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Call ``listener`` after every state change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return

        logger.debug(f"Session state {self._state.value} -> {state.value}")
        self._state = state
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.exception("Session listener failed")
                sentry_sdk.capture_exception(e)

    async def restore(self) -> Optional[Credentials]:
        """Adopt credentials persisted by a previous run, if any."""
        credentials = await self._store.load()
        if credentials is None:
            self._credentials = None
            self._set_state(SessionState.unauthenticated)
            return None

        self._credentials = credentials
        self._set_state(SessionState.authenticated)
        logger.info(f"Restored session for {credentials.handle} ({credentials.did})")
        return credentials

    async def login(self, handle: str, app_password: str) -> Credentials:
        """
        Authenticate with a handle and app password.

        The new credentials replace any existing session and are persisted before
        this returns. On failure the previous session, if any, is left untouched.

        Raises:
            AuthError: ``invalid_credentials``, ``network`` or ``server_error``
            StorageError: the credentials could not be persisted
        """
        previous_state = self._state
        self._set_state(SessionState.authenticating)
        try:
            credentials = await self._token_client.password_grant(handle, app_password)
            await self._store.save(credentials)
        except BaseException as e:
            self._set_state(previous_state)
            if isinstance(e, AuthError):
                self._metrics.increment(
                    "session.login.failed", 1, tag_dict={"reason": e.reason.value}
                )
            raise

        self._credentials = credentials
        self._set_state(SessionState.authenticated)
        self._metrics.increment("session.login", 1)
        logger.info(f"Signed in as {credentials.handle} ({credentials.did})")
        return credentials

    def _unavailable(self) -> AuthError:
        if self._state == SessionState.expired:
            return AuthError(
                AuthFailure.reauthentication_required,
                "Session expired, sign in again",
            )
        return AuthError(AuthFailure.not_authenticated, "Not signed in")

    async def current_credentials(self) -> Credentials:
        """
        Credentials whose access token is outside the refresh window.

        Awaits a refresh first when the cached token is inside the window.
        """
        credentials = self._credentials
        if credentials is None:
            raise self._unavailable()

        if not self._scheduler.needs_refresh(credentials, self._clock()):
            return credentials

        return await self._refresh(credentials)

    async def current_token(self) -> str:
        credentials = await self.current_credentials()
        return credentials.access_token

    async def reauthenticate(self, rejected_token: str) -> str:
        """
        Force a refresh after ``rejected_token`` was refused by a server.

        If the session already holds a different token (another caller refreshed
        in the meantime) that token is returned without a new refresh.
        """
        credentials = self._credentials
        if credentials is None:
            raise self._unavailable()

        if credentials.access_token != rejected_token:
            return await self.current_token()

        refreshed = await self._refresh(credentials)
        return refreshed.access_token

    async def refresh_if_needed(self) -> bool:
        """Refresh when the token is inside the refresh window. Returns True if it did."""
        credentials = self._credentials
        if credentials is None:
            return False
        if not self._scheduler.needs_refresh(credentials, self._clock()):
            return False
        await self._refresh(credentials)
        return True

    async def _refresh(self, credentials: Credentials) -> Credentials:
        task = self._refresh_tasks.get(credentials.did)
        if task is None:
            task = asyncio.create_task(
                self._run_refresh(credentials), name=f"refresh:{credentials.did}"
            )
            self._refresh_tasks[credentials.did] = task
            task.add_done_callback(
                lambda done, did=credentials.did: self._forget_refresh(did, done)
            )
        return await asyncio.shield(task)

    def _forget_refresh(self, did: str, task: asyncio.Task) -> None:
        if self._refresh_tasks.get(did) is task:
            del self._refresh_tasks[did]
        # Waiters may all have been cancelled; mark the outcome as retrieved.
        if not task.cancelled():
            task.exception()

    async def _run_refresh(self, credentials: Credentials) -> Credentials:
        self._set_state(SessionState.refreshing)
        try:
            refreshed = await self._scheduler.refresh(credentials)
        except AuthError as e:
            self._metrics.increment(
                "session.refresh.failed", 1, tag_dict={"reason": e.reason.value}
            )
            if self._credentials is credentials:
                await self._expire()
            raise AuthError(
                AuthFailure.reauthentication_required,
                f"Session could not be refreshed: {e.message}",
                e.status,
            ) from e
        except BaseException:
            if self._credentials is credentials:
                self._set_state(SessionState.authenticated)
            raise

        if self._credentials is not credentials:
            # Signed out or replaced by a new login while the refresh ran.
            if self._credentials is None:
                raise self._unavailable()
            return self._credentials

        self._credentials = refreshed
        try:
            await self._store.save(refreshed)
        except StorageError as e:
            logger.exception(f"Unable to persist refreshed credentials for {refreshed.did}")
            sentry_sdk.capture_exception(e)

        self._set_state(SessionState.authenticated)
        self._metrics.increment("session.refresh", 1)
        return refreshed

    async def _expire(self) -> None:
        logger.warning(f"Session for {self._credentials.did} expired")
        self._credentials = None
        self._set_state(SessionState.expired)
        self._metrics.increment("session.expired", 1)
        try:
            await self._store.clear()
        except StorageError as e:
            logger.exception("Unable to clear expired credentials")
            sentry_sdk.capture_exception(e)

    async def sign_out(self) -> None:
        """Forget the session in memory and in the store. Never raises."""
        credentials = self._credentials
        self._credentials = None
        try:
            await self._store.clear()
        except StorageError as e:
            logger.exception("Unable to clear stored credentials")
            sentry_sdk.capture_exception(e)
        self._set_state(SessionState.unauthenticated)
        if credentials is not None:
            logger.info(f"Signed out {credentials.handle}")

    async def close(self) -> None:
        """Cancel refreshes still in flight."""
        tasks = list(self._refresh_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
