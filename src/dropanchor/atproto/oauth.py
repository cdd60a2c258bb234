"""
OAuth Token Endpoint Client

Exchanges a handle and app password for tokens (``grant_type=password``) and
rotates tokens (``grant_type=refresh_token``) against the configured token
endpoint. Responses become immutable Credentials.

Token response fields:
- access_token, refresh_token (required)
- expires_in (seconds); when missing, the access token's ``exp`` claim is used,
  then the configured session duration
- sub or did, handle, pds_url (optional); a missing DID or PDS is resolved from
  the handle through identity resolution

Error mapping:
- network errors and timeouts: ``network`` (transient)
- 5xx and 429: ``server_error`` (transient)
- password grant 400/401 and other 4xx: ``invalid_credentials``
- refresh grant 4xx: ``refresh_rejected`` (definitive, never retried)
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import ClientError, ClientTimeout, FormData

from dropanchor.app.config import Settings
from dropanchor.atproto.chain import ChainMiddlewareClient, ChainResponse
from dropanchor.atproto.jwt import token_expiry
from dropanchor.errors import AuthError, AuthFailure
from dropanchor.model.credentials import Credentials
from dropanchor.resolve.handle import ResolvedSubject

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
SubjectResolver = Callable[[str], Awaitable[Optional[ResolvedSubject]]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenEndpointClient:
    """Talks to the OAuth token endpoint. Never retries; callers decide."""

    def __init__(
        self,
        http: ChainMiddlewareClient,
        settings: Settings,
        resolve_subject: Optional[SubjectResolver] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._http = http
        self._settings = settings
        self._resolve_subject = resolve_subject
        self._clock = clock
        self._timeout = ClientTimeout(total=settings.request_timeout)

    async def password_grant(self, handle: str, password: str) -> Credentials:
        data = FormData()
        data.add_field("grant_type", "password")
        data.add_field("username", handle)
        data.add_field("password", password)

        chain_response = await self._post(data, "password")

        if not chain_response.ok:
            raise self._password_error(chain_response)

        return await self._credentials_from_response(
            chain_response, handle=handle
        )

    async def refresh_grant(self, credentials: Credentials) -> Credentials:
        data = FormData()
        data.add_field("grant_type", "refresh_token")
        data.add_field("refresh_token", credentials.refresh_token)

        chain_response = await self._post(data, "refresh_token")

        if not chain_response.ok:
            raise self._refresh_error(chain_response)

        return await self._credentials_from_response(
            chain_response, previous=credentials
        )

    async def _post(self, data: FormData, grant_type: str) -> ChainResponse:
        try:
            async with self._http.post(
                self._settings.token_endpoint,
                data=data,
                timeout=self._timeout,
                trace_request_ctx={"operation": f"token.{grant_type}"},
            ) as (_, chain_response):
                return chain_response
        except (ClientError, asyncio.TimeoutError) as e:
            raise AuthError(
                AuthFailure.network, f"Token endpoint unreachable: {e!r}"
            ) from e

    def _password_error(self, response: ChainResponse) -> AuthError:
        message = response.error_message()
        if response.status >= 500 or response.status == 429:
            return AuthError(AuthFailure.server_error, message, response.status)
        return AuthError(
            AuthFailure.invalid_credentials,
            message or "Invalid handle or app password",
            response.status,
        )

    def _refresh_error(self, response: ChainResponse) -> AuthError:
        message = response.error_message()
        if response.status >= 500 or response.status == 429:
            return AuthError(AuthFailure.server_error, message, response.status)
        return AuthError(
            AuthFailure.refresh_rejected,
            message or "Refresh token rejected",
            response.status,
        )

    async def _credentials_from_response(
        self,
        response: ChainResponse,
        handle: Optional[str] = None,
        previous: Optional[Credentials] = None,
    ) -> Credentials:
        body = response.body
        if (
            not isinstance(body, dict)
            or not isinstance(body.get("access_token"), str)
            or not body.get("access_token")
        ):
            raise AuthError(
                AuthFailure.server_error,
                "Token endpoint returned a malformed token response",
                response.status,
            )

        now = self._clock()
        access_token: str = body["access_token"]
        refresh_token = body.get("refresh_token") or (
            previous.refresh_token if previous is not None else None
        )
        if not refresh_token:
            raise AuthError(
                AuthFailure.server_error,
                "Token endpoint did not issue a refresh token",
                response.status,
            )

        did = body.get("sub") or body.get("did") or (previous.did if previous else None)
        handle = body.get("handle") or handle or (previous.handle if previous else None)
        pds_base_url = body.get("pds_url") or (
            previous.pds_base_url if previous else None
        )

        if did is None or pds_base_url is None or handle is None:
            resolved = await self._resolve(did or handle)
            did = did or resolved.did
            handle = handle or resolved.handle
            pds_base_url = pds_base_url or resolved.pds

        return Credentials(
            access_token=access_token,
            refresh_token=refresh_token,
            handle=handle,
            did=did,
            pds_base_url=pds_base_url,
            expires_at=self._expires_at(body, access_token, now),
            issued_at=now,
        )

    def _expires_at(
        self, body: Dict[str, Any], access_token: str, now: datetime
    ) -> datetime:
        expires_in = body.get("expires_in")
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            return now + timedelta(seconds=expires_in)

        expiry = token_expiry(access_token)
        if expiry is not None:
            return expiry

        return now + self._settings.session_duration_delta

    async def _resolve(self, subject: Optional[str]) -> ResolvedSubject:
        resolved = None
        if subject is not None and self._resolve_subject is not None:
            resolved = await self._resolve_subject(subject)
        if resolved is None:
            raise AuthError(
                AuthFailure.server_error,
                f"Unable to resolve the PDS for {subject}",
            )
        return resolved
