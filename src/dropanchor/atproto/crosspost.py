"""
Crosspost Adapter

Announces a published check-in as an ``app.bsky.feed.post`` in the user's own
repository. The post is best-effort: the check-in already exists when this
runs, and nothing here can undo or block it.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional

import sentry_sdk

from dropanchor.app.config import Settings
from dropanchor.atproto.oauth import Clock, utc_now
from dropanchor.atproto.records import RecordClient
from dropanchor.atproto.richtext import build_checkin_post, mention_handles
from dropanchor.errors import (
    AuthError,
    CrosspostError,
    CrosspostFailure,
    RecordError,
    RecordFailure,
)
from dropanchor.model.place import Place
from dropanchor.model.records import (
    POST_COLLECTION,
    CrosspostRecord,
    FeedPost,
    RecordEmbed,
    StrongRef,
    format_datetime,
)

logger = logging.getLogger(__name__)

HandleResolver = Callable[[str], Awaitable[Optional[str]]]


class CrosspostAdapter:
    def __init__(
        self,
        record_client: RecordClient,
        settings: Settings,
        resolve_did: Optional[HandleResolver] = None,
        clock: Clock = utc_now,
        langs: Optional[List[str]] = None,
    ) -> None:
        self._record_client = record_client
        self._settings = settings
        self._resolve_did = resolve_did
        self._clock = clock
        self._langs = langs

    async def post(
        self, checkin_ref: StrongRef, message: Optional[str], place: Place
    ) -> CrosspostRecord:
        """
        Write the feed post for the check-in at ``checkin_ref``.

        Raises:
            CrosspostError: ``network`` when the PDS could not be reached,
                ``server_error`` for every other failure
        """
        try:
            return await self._post(checkin_ref, message, place)
        except CrosspostError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error crossposting {checkin_ref.uri}")
            sentry_sdk.capture_exception(e)
            raise CrosspostError(
                CrosspostFailure.server_error, f"Crosspost failed: {e!r}"
            ) from e

    async def _post(
        self, checkin_ref: StrongRef, message: Optional[str], place: Place
    ) -> CrosspostRecord:
        mention_dids = await self._mention_dids(message or "")
        text, facets = build_checkin_post(
            place,
            message,
            self._settings.default_checkin_message,
            place.canonical_url(self._settings.place_base_url),
            mention_dids,
        )

        embed = None
        if self._settings.crosspost_embed_checkin:
            embed = RecordEmbed(record=checkin_ref)

        post = FeedPost(
            text=text,
            created_at=format_datetime(self._clock()),
            facets=facets,
            embed=embed,
            langs=self._langs,
        )

        try:
            ref = await self._record_client.create_record(POST_COLLECTION, post)
        except RecordError as e:
            reason = (
                CrosspostFailure.network
                if e.reason == RecordFailure.network
                else CrosspostFailure.server_error
            )
            raise CrosspostError(reason, f"Crosspost failed: {e.message}") from e
        except AuthError as e:
            raise CrosspostError(
                CrosspostFailure.server_error, f"Crosspost failed: {e.message}"
            ) from e

        logger.info(f"Crossposted check-in {checkin_ref.uri} as {ref.uri}")
        return CrosspostRecord(post=post, ref=ref)

    async def _mention_dids(self, message: str) -> Dict[str, str]:
        if self._resolve_did is None:
            return {}

        dids = {}
        for handle in mention_handles(message):
            did = await self._resolve_did(handle)
            if did is None:
                logger.debug(f"Mention @{handle} did not resolve, leaving it as text")
                continue
            dids[handle] = did
        return dids
