"""
HTTP request middleware chain.

Wraps an aiohttp ClientSession so every request passes through a list of
middleware before it is sent. Each middleware may change the request, inspect
the response, and ask for the request to be sent again by returning a third
element (the request to send) from ``handle``.

Middleware used by the Anchor core:
- UserAgentMiddleware: identifies the client on every request
- MetricsMiddleware: request counts and timings
- BearerTokenMiddleware: attaches the session's access token and performs a
  single reauthenticate-and-retry when the PDS answers 401
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generator,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy

from dropanchor.app.metrics import MetricsClient

RequestFunc = Callable[..., Awaitable[ClientResponse]]

logger = logging.getLogger(__name__)

REAUTHENTICATED = "reauthenticated"


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: Dict[str, Any] = field(default_factory=dict)
    trace_request_ctx: Dict[str, Any] = field(default_factory=dict)
    kwargs: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "ChainRequest":
        return ChainRequest(
            method=self.method,
            url=self.url,
            headers=dict(self.headers),
            trace_request_ctx=dict(self.trace_request_ctx),
            kwargs=dict(self.kwargs),
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | Dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")
        if content_type.startswith("application/json"):
            body = await response.json()
        elif content_type.startswith("text/"):
            body = await response.text()
        else:
            body = await response.read()
        return ChainResponse(status=response.status, headers=response.headers, body=body)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def body_matches_kv(self, key: str, value: Any) -> bool:
        return isinstance(self.body, dict) and self.body.get(key) == value

    def error_message(self) -> Optional[str]:
        """The XRPC/OAuth error description carried by an error body, if any."""
        if not isinstance(self.body, dict):
            return None
        for key in ("message", "error_description", "error"):
            value = self.body.get(key)
            if isinstance(value, str) and value:
                return value
        return None


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class UserAgentMiddleware(RequestMiddlewareBase):
    def __init__(self, user_agent: str) -> None:
        super().__init__()
        self._user_agent = user_agent

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        request.headers.setdefault(hdrs.USER_AGENT, self._user_agent)
        return await next(request)


class MetricsMiddleware(RequestMiddlewareBase):
    def __init__(self, metrics: MetricsClient) -> None:
        super().__init__()
        self._metrics = metrics

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        operation = request.trace_request_ctx.get("operation", "unknown")
        start_time = time.monotonic()
        try:
            response = await next(request)
        except Exception:
            self._metrics.increment(
                "http.request.error",
                1,
                tag_dict={"method": request.method, "operation": operation},
            )
            raise

        elapsed_ms = (time.monotonic() - start_time) * 1000
        tags = {
            "method": request.method,
            "operation": operation,
            "status": str(response[1].status),
        }
        self._metrics.increment("http.request.count", 1, tag_dict=tags)
        self._metrics.timer("http.request.duration", elapsed_ms, tag_dict=tags)
        return response


class TokenSource(Protocol):
    """What the bearer middleware needs from the session manager."""

    async def current_token(self) -> str: ...

    async def reauthenticate(self, rejected_token: str) -> str: ...


class BearerTokenMiddleware(RequestMiddlewareBase):
    """
    Authorizes requests with the session's access token.

    A 401 response triggers exactly one reauthentication (a forced refresh
    shared with any concurrent callers) followed by one retry of the request.
    The retry is marked in ``trace_request_ctx`` so a second 401 is returned to
    the caller instead of looping.
    """

    def __init__(self, token_source: TokenSource) -> None:
        super().__init__()
        self._token_source = token_source

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        token = await self._token_source.current_token()
        request.headers[hdrs.AUTHORIZATION] = f"Bearer {token}"

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]

        if chain_response.status != 401 or request.trace_request_ctx.get(
            REAUTHENTICATED
        ):
            return response

        logger.info(f"Access token rejected by {request.url}, reauthenticating")
        await self._token_source.reauthenticate(token)

        new_request = request.copy()
        new_request.trace_request_ctx[REAUTHENTICATED] = True
        return client_response, chain_response, new_request


class EndOfLineChainMiddleware:
    """Sends the request with the wrapped ClientSession and reads the body."""

    def __init__(self, request_func: RequestFunc) -> None:
        self._request_func = request_func

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        logger.debug(f"Making request: {request.method} {request.url}")

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            trace_request_ctx=dict(request.trace_request_ctx),
            **request.kwargs,
        )
        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    """
    Runs the chain when awaited or entered.

    A middleware asking for a resend gets it, up to ``max_sends`` requests in
    total; the intermediate response is released before the next send.
    """

    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        max_sends: int = 2,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._max_sends = max_sends
        self.client_response: ClientResponse | None = None

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        chain_request = self._chain_request

        for send in range(1, self._max_sends + 1):
            logger.debug(f"Send {send} out of {self._max_sends}")

            response = await self._chain_callback(chain_request)
            self.client_response = response[0]
            if len(response) == 2:
                return response[0], response[1]

            if not response[0].closed:
                response[0].close()
            chain_request = response[2]

        raise RuntimeError(
            f"Gave up on {chain_request.method} {chain_request.url} "
            f"after {self._max_sends} sends"
        )

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    """
    A ClientSession wrapper whose requests run through ``middleware``, first
    to last. The session is borrowed and is never closed here.
    """

    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] = (),
    ) -> None:
        self._client = client_session
        self._middleware = list(middleware)

    def request(self, method: str, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=dict(kwargs.pop("headers", None) or {}),
            trace_request_ctx=dict(kwargs.pop("trace_request_ctx", None) or {}),
            kwargs=kwargs,
        )

        chain_callback: NextChainCallbackType = EndOfLineChainMiddleware(
            self._client.request
        ).handle
        for mw in reversed(self._middleware):
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(chain_callback, chain_request)

    def post(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self.request(hdrs.METH_POST, url, **kwargs)
