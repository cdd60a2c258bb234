"""
Composition root.

AnchorContext builds every component once, from one Settings object, and hands
the same SessionManager to everything that needs a token. Nothing else in the
package constructs collaborators or reads configuration on its own.
"""

import asyncio
import logging
import os
from functools import partial
from types import TracebackType
from typing import Optional

import aiohttp
import redis.asyncio as redis

from dropanchor.app.config import Settings
from dropanchor.app.metrics import MetricsClient, create_metrics_client
from dropanchor.app.tasks import ProactiveRefreshTask
from dropanchor.atproto.chain import (
    BearerTokenMiddleware,
    ChainMiddlewareClient,
    MetricsMiddleware,
    UserAgentMiddleware,
)
from dropanchor.atproto.crosspost import CrosspostAdapter
from dropanchor.atproto.oauth import Clock, TokenEndpointClient, utc_now
from dropanchor.atproto.publisher import StrongRefPublisher
from dropanchor.atproto.records import RecordClient
from dropanchor.atproto.refresh import RetryPolicy, Sleep, TokenRefreshScheduler
from dropanchor.atproto.session import SessionManager
from dropanchor.atproto.store import (
    CredentialStore,
    EncryptedFileCredentialStore,
    RedisCredentialStore,
    load_or_create_key,
)
from dropanchor.resolve.handle import resolve_handle, resolve_subject

logger = logging.getLogger(__name__)


def create_credential_store(
    settings: Settings, redis_client: Optional[redis.Redis] = None
) -> CredentialStore:
    """Redis when a client is given, otherwise the encrypted credentials file."""
    if redis_client is not None:
        return RedisCredentialStore(redis_client)
    path = os.path.expanduser(settings.credentials_file)
    encryption_key = settings.encryption_key or load_or_create_key(f"{path}.key")
    return EncryptedFileCredentialStore(path, encryption_key)


def create_trace_config(debug: bool) -> aiohttp.TraceConfig:
    trace_config = aiohttp.TraceConfig()

    if debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.debug(f"Starting request: {params.method} {params.url}")

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.debug(
                f"Ending request: {params.method} {params.url} {params.response.status}"
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    return trace_config


class AnchorContext:
    def __init__(
        self,
        settings: Settings,
        http_session: aiohttp.ClientSession,
        metrics: MetricsClient,
        store: CredentialStore,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
        redis_client: Optional[redis.Redis] = None,
        owns_http_session: bool = False,
    ) -> None:
        self.settings = settings
        self.http_session = http_session
        self.metrics = metrics
        self.store = store
        self._redis_client = redis_client
        self._owns_http_session = owns_http_session

        resolve = partial(resolve_subject, http_session, settings.plc_hostname)

        self.token_client = TokenEndpointClient(
            ChainMiddlewareClient(
                http_session,
                middleware=[
                    UserAgentMiddleware(settings.user_agent),
                    MetricsMiddleware(metrics),
                ],
            ),
            settings,
            resolve_subject=resolve,
            clock=clock,
        )
        self.scheduler = TokenRefreshScheduler(
            self.token_client,
            settings.refresh_threshold_delta,
            RetryPolicy.from_settings(settings),
            clock=clock,
            sleep=sleep,
        )
        self.session = SessionManager(
            self.token_client, store, self.scheduler, clock=clock, metrics=metrics
        )
        self.record_client = RecordClient(
            ChainMiddlewareClient(
                http_session,
                middleware=[
                    UserAgentMiddleware(settings.user_agent),
                    MetricsMiddleware(metrics),
                    BearerTokenMiddleware(self.session),
                ],
            ),
            self.session,
            settings,
        )
        self.crosspost_adapter = CrosspostAdapter(
            self.record_client,
            settings,
            resolve_did=partial(resolve_handle, http_session),
            clock=clock,
        )
        self.publisher = StrongRefPublisher(
            self.record_client,
            self.crosspost_adapter,
            clock=clock,
            metrics=metrics,
        )
        self.refresh_task = ProactiveRefreshTask(self.session, clock=clock, sleep=sleep)

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        store: Optional[CredentialStore] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
        metrics: Optional[MetricsClient] = None,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
        start_refresh_task: Optional[bool] = None,
    ) -> "AnchorContext":
        """
        Build a context, creating whatever was not passed in.

        Persisted credentials are restored before this returns, and the
        proactive refresh task is running unless ``start_refresh_task`` (default
        ``settings.proactive_refresh``) is false.
        """
        if settings is None:
            settings = Settings()  # type: ignore

        owns_http_session = http_session is None
        if http_session is None:
            http_session = aiohttp.ClientSession(
                trace_configs=[create_trace_config(settings.debug)]
            )

        if metrics is None:
            metrics = await create_metrics_client(settings)

        redis_client = None
        if store is None:
            if settings.redis_dsn is not None:
                redis_client = redis.Redis.from_url(str(settings.redis_dsn))
            store = create_credential_store(settings, redis_client)

        context = cls(
            settings,
            http_session,
            metrics,
            store,
            clock=clock,
            sleep=sleep,
            redis_client=redis_client,
            owns_http_session=owns_http_session,
        )
        await context.session.restore()

        if start_refresh_task is None:
            start_refresh_task = settings.proactive_refresh
        if start_refresh_task:
            context.refresh_task.start()
        return context

    async def close(self) -> None:
        await self.refresh_task.stop()
        await self.session.close()
        if self._owns_http_session:
            await self.http_session.close()
        if self._redis_client is not None:
            await self._redis_client.aclose()
        await self.metrics.close()

    async def __aenter__(self) -> "AnchorContext":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
