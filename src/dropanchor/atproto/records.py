"""
Record Client

Thin wrappers around the PDS repository XRPC methods used by the publishing
pipeline:

- com.atproto.repo.createRecord -> StrongRef (uri and cid exactly as returned)
- com.atproto.repo.getRecord -> (value, cid)
- com.atproto.repo.uploadBlob -> blob reference

Every request is authorized by the session's bearer token. A 401 is retried
once after a forced refresh (see BearerTokenMiddleware); a second 401 raises
``AuthError.reauthentication_required``. Timeouts and connection errors surface
immediately as ``RecordError.network``; nothing here retries.
"""

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from aiohttp import ClientError, ClientTimeout, hdrs

from dropanchor.app.config import Settings
from dropanchor.atproto.chain import ChainMiddlewareClient, ChainResponse
from dropanchor.atproto.session import SessionManager
from dropanchor.errors import (
    AuthError,
    AuthFailure,
    IntegrityError,
    RecordError,
    RecordFailure,
)
from dropanchor.model.records import AtUri, LexiconModel, StrongRef

logger = logging.getLogger(__name__)

CREATE_RECORD = "com.atproto.repo.createRecord"
GET_RECORD = "com.atproto.repo.getRecord"
UPLOAD_BLOB = "com.atproto.repo.uploadBlob"


class RecordClient:
    def __init__(
        self,
        http: ChainMiddlewareClient,
        session: SessionManager,
        settings: Settings,
    ) -> None:
        self._http = http
        self._session = session
        self._timeout = ClientTimeout(total=settings.request_timeout)

    async def create_record(
        self,
        collection: str,
        value: Union[LexiconModel, Mapping[str, Any]],
        rkey: Optional[str] = None,
    ) -> StrongRef:
        """
        Write ``value`` to ``collection`` in the signed-in account's repository.

        Raises:
            RecordError: ``validation`` (4xx), ``server_error`` (5xx) or ``network``
            AuthError: the session is gone or the token was refused twice
        """
        credentials = await self._session.current_credentials()

        record = value.to_record() if isinstance(value, LexiconModel) else dict(value)
        payload: Dict[str, Any] = {
            "repo": credentials.did,
            "collection": collection,
            "record": record,
        }
        if rkey is not None:
            payload["rkey"] = rkey

        response = await self._send(
            "POST",
            f"{credentials.pds_base_url}/xrpc/{CREATE_RECORD}",
            CREATE_RECORD,
            json=payload,
        )
        if not response.ok:
            raise self._error(response, CREATE_RECORD)

        body = response.body
        if (
            not isinstance(body, dict)
            or not isinstance(body.get("uri"), str)
            or not isinstance(body.get("cid"), str)
        ):
            raise RecordError(
                RecordFailure.server_error,
                f"{CREATE_RECORD} returned no uri/cid",
                response.status,
            )

        ref = StrongRef(uri=body["uri"], cid=body["cid"])
        logger.debug(f"Created {ref.uri} ({ref.cid})")
        return ref

    async def get_record(self, uri: str) -> Tuple[Dict[str, Any], str]:
        """Fetch the record at ``uri``. Returns its value and current cid."""
        try:
            at_uri = AtUri.parse(uri)
        except ValueError as e:
            raise RecordError(RecordFailure.validation, str(e)) from e

        credentials = await self._session.current_credentials()
        response = await self._send(
            "GET",
            f"{credentials.pds_base_url}/xrpc/{GET_RECORD}",
            GET_RECORD,
            params={
                "repo": at_uri.repo,
                "collection": at_uri.collection,
                "rkey": at_uri.rkey,
            },
        )

        if response.status == 404 or (
            response.status == 400
            and response.body_matches_kv("error", "RecordNotFound")
        ):
            raise RecordError(
                RecordFailure.not_found, f"Record not found: {uri}", response.status
            )
        if not response.ok:
            raise self._error(response, GET_RECORD)

        body = response.body
        if (
            not isinstance(body, dict)
            or not isinstance(body.get("value"), dict)
            or not isinstance(body.get("cid"), str)
        ):
            raise RecordError(
                RecordFailure.server_error,
                f"{GET_RECORD} returned no value/cid for {uri}",
                response.status,
            )
        return body["value"], body["cid"]

    async def verify_strong_ref(self, ref: StrongRef) -> Dict[str, Any]:
        """
        Re-resolve ``ref`` and return the record value.

        Raises:
            IntegrityError: the record's current cid differs from ``ref.cid``
        """
        value, cid = await self.get_record(ref.uri)
        if cid != ref.cid:
            logger.error(f"StrongRef mismatch for {ref.uri}: {ref.cid} != {cid}")
            raise IntegrityError(ref.uri, ref.cid, cid)
        return value

    async def upload_blob(self, data: bytes, mime_type: str) -> Dict[str, Any]:
        """Upload media and return the blob reference to embed in a record."""
        credentials = await self._session.current_credentials()
        response = await self._send(
            "POST",
            f"{credentials.pds_base_url}/xrpc/{UPLOAD_BLOB}",
            UPLOAD_BLOB,
            data=data,
            headers={hdrs.CONTENT_TYPE: mime_type},
        )
        if not response.ok:
            raise self._error(response, UPLOAD_BLOB)

        body = response.body
        if not isinstance(body, dict) or not isinstance(body.get("blob"), dict):
            raise RecordError(
                RecordFailure.server_error,
                f"{UPLOAD_BLOB} returned no blob",
                response.status,
            )
        return body["blob"]

    async def _send(
        self, method: str, url: str, operation: str, **kwargs: Any
    ) -> ChainResponse:
        try:
            async with self._http.request(
                method,
                url,
                timeout=self._timeout,
                trace_request_ctx={"operation": operation},
                **kwargs,
            ) as (_, chain_response):
                pass
        except (ClientError, asyncio.TimeoutError) as e:
            raise RecordError(
                RecordFailure.network, f"{operation} failed: {e!r}"
            ) from e

        if chain_response.status == 401:
            raise AuthError(
                AuthFailure.reauthentication_required,
                f"{operation} refused the refreshed access token",
                401,
            )
        return chain_response

    def _error(self, response: ChainResponse, operation: str) -> RecordError:
        message = response.error_message() or f"{operation} failed"
        if response.status >= 500 or response.status == 429:
            return RecordError(RecordFailure.server_error, message, response.status)
        return RecordError(RecordFailure.validation, message, response.status)
