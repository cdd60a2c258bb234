"""
Unit tests for the proactive refresh background task.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest

from dropanchor.app.context import AnchorContext
from dropanchor.app.tasks import ProactiveRefreshTask
from dropanchor.atproto.store import InMemoryCredentialStore
from dropanchor.errors import AuthError, AuthFailure
from dropanchor.model.session import SessionSnapshot, SessionState

from conftest import (
    START_TIME,
    TEST_DID,
    TEST_HANDLE,
    TEST_PASSWORD,
    FakeClock,
    FakeSleep,
    make_credentials,
)


def make_session(expires_at=None, refresh_result=False):
    session = Mock()
    state = SessionState.authenticated if expires_at else SessionState.unauthenticated
    session.snapshot.return_value = SessionSnapshot(state=state, expires_at=expires_at)
    session.scheduler.refresh_threshold = timedelta(hours=1)
    session.refresh_if_needed = AsyncMock(return_value=refresh_result)
    return session


class TestNextDelay:
    """The task sleeps until the token is due, within bounds."""

    def test_idle_without_session(self):
        task = ProactiveRefreshTask(make_session(), idle_interval=60.0, clock=FakeClock())
        assert task.next_delay() == 60.0

    def test_capped_by_idle_interval(self):
        session = make_session(expires_at=START_TIME + timedelta(hours=4))
        task = ProactiveRefreshTask(session, idle_interval=60.0, clock=FakeClock())
        assert task.next_delay() == 60.0

    def test_sleeps_until_refresh_window(self):
        session = make_session(expires_at=START_TIME + timedelta(hours=4))
        task = ProactiveRefreshTask(session, idle_interval=86400.0, clock=FakeClock())
        assert task.next_delay() == 3 * 60 * 60

    def test_overdue_uses_min_interval(self):
        session = make_session(expires_at=START_TIME + timedelta(minutes=5))
        task = ProactiveRefreshTask(session, min_interval=1.0, clock=FakeClock())
        assert task.next_delay() == 1.0


class TestTick:
    """A tick never raises."""

    @pytest.mark.asyncio
    async def test_refreshed(self):
        session = make_session(refresh_result=True)
        assert await ProactiveRefreshTask(session).tick() is True

    @pytest.mark.asyncio
    async def test_auth_error(self):
        session = make_session()
        session.refresh_if_needed.side_effect = AuthError(
            AuthFailure.reauthentication_required, "Session could not be refreshed"
        )
        assert await ProactiveRefreshTask(session).tick() is False

    @pytest.mark.asyncio
    @patch("dropanchor.app.tasks.sentry_sdk")
    async def test_unexpected_error_is_reported(self, mock_sentry):
        session = make_session()
        error = RuntimeError("boom")
        session.refresh_if_needed.side_effect = error

        assert await ProactiveRefreshTask(session).tick() is False
        mock_sentry.capture_exception.assert_called_once_with(error)


class TestLifecycle:
    """Start and stop the background task."""

    @pytest.mark.asyncio
    async def test_start_stop(self):
        async def sleep_forever(delay):
            await asyncio.Event().wait()

        task = ProactiveRefreshTask(make_session(), sleep=sleep_forever)
        assert not task.running

        task.start()
        first = task._task
        task.start()
        assert task._task is first
        assert task.running

        await task.stop()
        assert not task.running
        await task.stop()

    @pytest.mark.asyncio
    async def test_refreshes_before_expiry(self, context, fake_clock, fake_pds):
        await context.session.login(TEST_HANDLE, TEST_PASSWORD)
        task = ProactiveRefreshTask(
            context.session, clock=fake_clock, sleep=FakeSleep(fake_clock)
        )

        task.start()
        try:

            async def wait_for_refresh():
                while fake_pds.refresh_calls == 0:
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(wait_for_refresh(), timeout=5)
        finally:
            await task.stop()

        assert await context.session.current_token() != "access-1"
        assert fake_pds.password_calls == 1
        assert context.session.state == SessionState.authenticated


class TestContextRefreshTask:
    """AnchorContext.create runs the refresh task unless told not to."""

    @pytest.mark.asyncio
    async def test_create_starts_refresh(
        self, settings, http_session, metrics, fake_clock, fake_pds
    ):
        fake_pds.refresh_tokens["refresh-0"] = TEST_DID
        store = InMemoryCredentialStore(make_credentials(pds_base_url=fake_pds.url))

        context = await AnchorContext.create(
            settings,
            store=store,
            http_session=http_session,
            metrics=metrics,
            clock=fake_clock,
            sleep=FakeSleep(fake_clock),
        )
        try:
            assert context.refresh_task.running
            assert context.session.state == SessionState.authenticated

            async def wait_for_refresh():
                while (await store.load()).refresh_token == "refresh-0":
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(wait_for_refresh(), timeout=5)
            assert fake_pds.refresh_calls >= 1
        finally:
            await context.close()

        assert not context.refresh_task.running
        assert fake_pds.password_calls == 0

    @pytest.mark.asyncio
    async def test_create_without_refresh(
        self, settings, http_session, metrics, store, fake_clock, fake_sleep
    ):
        context = await AnchorContext.create(
            settings,
            store=store,
            http_session=http_session,
            metrics=metrics,
            clock=fake_clock,
            sleep=fake_sleep,
            start_refresh_task=False,
        )
        async with context:
            assert not context.refresh_task.running

    @pytest.mark.asyncio
    async def test_setting_disables_refresh(
        self, settings, http_session, metrics, store, fake_clock, fake_sleep
    ):
        settings = settings.model_copy(update={"proactive_refresh": False})
        context = await AnchorContext.create(
            settings,
            store=store,
            http_session=http_session,
            metrics=metrics,
            clock=fake_clock,
            sleep=fake_sleep,
        )
        async with context:
            assert not context.refresh_task.running
