"""
StrongRef Publisher

Publishes a check-in as two linked records in the user's repository:

1. The venue's AddressRecord, unless the caller passes the ``address_ref`` of
   one written by an earlier attempt.
2. The CheckinRecord, whose ``addressRef`` pins the address by URI and CID.

The PDS has no multi-record transactions. An address record written by an
attempt that then fails (or is cancelled) stays in the repository unreferenced;
that is accepted, and the failure hands back its ``address_ref`` so a retry does
not write another one.

An optional crosspost runs after both records exist. Its failure is reported as
a warning on the result and never fails the publish.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from dropanchor.app.metrics import MetricsClient, NoOpMetricsClient
from dropanchor.atproto.crosspost import CrosspostAdapter
from dropanchor.atproto.oauth import Clock, utc_now
from dropanchor.atproto.records import RecordClient
from dropanchor.errors import (
    AuthError,
    CrosspostError,
    PublishError,
    PublishFailure,
    RecordError,
)
from dropanchor.model.place import Place
from dropanchor.model.records import (
    ADDRESS_COLLECTION,
    CHECKIN_COLLECTION,
    CheckinImage,
    CheckinRecord,
    CrosspostRecord,
    GeoCoordinates,
    StrongRef,
    format_datetime,
)

logger = logging.getLogger(__name__)


class CheckinMedia(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes
    mime_type: str = "image/jpeg"
    alt: Optional[str] = None


class CheckinDraft(BaseModel):
    """What the user is checking in with, before anything is written."""

    model_config = ConfigDict(frozen=True)

    place: Place
    message: str = ""
    coordinates: Optional[GeoCoordinates] = None
    media: Optional[CheckinMedia] = None
    category_icon: Optional[str] = None


@dataclass(frozen=True)
class PublishResult:
    checkin_ref: StrongRef
    address_ref: StrongRef
    checkin: CheckinRecord
    crosspost: Optional[CrosspostRecord] = None
    crosspost_error: Optional[CrosspostError] = None
    warnings: List[str] = field(default_factory=list)


class StrongRefPublisher:
    def __init__(
        self,
        record_client: RecordClient,
        crosspost_adapter: Optional[CrosspostAdapter] = None,
        clock: Clock = utc_now,
        metrics: Optional[MetricsClient] = None,
    ) -> None:
        self._record_client = record_client
        self._crosspost_adapter = crosspost_adapter
        self._clock = clock
        self._metrics = metrics or NoOpMetricsClient()

    async def publish(
        self,
        draft: CheckinDraft,
        address_ref: Optional[StrongRef] = None,
        crosspost: bool = False,
    ) -> PublishResult:
        """
        Write the address and check-in records for ``draft``.

        Raises:
            PublishError: ``address_write_failed`` when step 1 fails, or
                ``checkin_write_failed`` (carrying ``address_ref``) when step 2
                fails. The underlying RecordError or AuthError is the cause.
        """
        if address_ref is None:
            address_ref = await self._write_address(draft.place)
        else:
            logger.info(f"Reusing address record {address_ref.uri}")

        try:
            checkin, checkin_ref = await self._write_checkin(draft, address_ref)
        except asyncio.CancelledError:
            logger.warning(
                f"Publish cancelled after writing address record {address_ref.uri}"
            )
            raise

        self._metrics.increment("publish.checkin", 1)
        logger.info(f"Published check-in {checkin_ref.uri} at {draft.place.name}")

        if not crosspost:
            return PublishResult(
                checkin_ref=checkin_ref, address_ref=address_ref, checkin=checkin
            )

        return await self._crosspost(draft, checkin, checkin_ref, address_ref)

    async def _write_address(self, place: Place) -> StrongRef:
        try:
            return await self._record_client.create_record(
                ADDRESS_COLLECTION, place.to_address()
            )
        except (RecordError, AuthError) as e:
            self._metrics.increment("publish.failed", 1, tag_dict={"step": "address"})
            raise PublishError(
                PublishFailure.address_write_failed,
                f"Unable to write address record: {e.message}",
            ) from e

    async def _write_checkin(self, draft: CheckinDraft, address_ref: StrongRef):
        try:
            image = None
            if draft.media is not None:
                blob = await self._record_client.upload_blob(
                    draft.media.data, draft.media.mime_type
                )
                image = CheckinImage(image=blob, alt=draft.media.alt)

            place = draft.place
            checkin = CheckinRecord(
                text=draft.message,
                created_at=format_datetime(self._clock()),
                address_ref=address_ref,
                coordinates=draft.coordinates or place.to_coordinates(),
                image=image,
                category=place.category,
                category_group=place.category_group,
                category_icon=draft.category_icon,
            )
            checkin_ref = await self._record_client.create_record(
                CHECKIN_COLLECTION, checkin
            )
        except (RecordError, AuthError) as e:
            self._metrics.increment("publish.failed", 1, tag_dict={"step": "checkin"})
            raise PublishError(
                PublishFailure.checkin_write_failed,
                f"Unable to write check-in record: {e.message}",
                address_ref=address_ref,
            ) from e

        return checkin, checkin_ref

    async def _crosspost(
        self,
        draft: CheckinDraft,
        checkin: CheckinRecord,
        checkin_ref: StrongRef,
        address_ref: StrongRef,
    ) -> PublishResult:
        if self._crosspost_adapter is None:
            logger.warning("Crosspost requested but no crosspost adapter is configured")
            return PublishResult(
                checkin_ref=checkin_ref,
                address_ref=address_ref,
                checkin=checkin,
                warnings=["Crossposting is not configured"],
            )

        try:
            record = await self._crosspost_adapter.post(
                checkin_ref, draft.message, draft.place
            )
        except CrosspostError as e:
            logger.warning(f"Crosspost for {checkin_ref.uri} failed: {e.message}")
            self._metrics.increment(
                "publish.crosspost.failed", 1, tag_dict={"reason": e.reason.value}
            )
            return PublishResult(
                checkin_ref=checkin_ref,
                address_ref=address_ref,
                checkin=checkin,
                crosspost_error=e,
                warnings=[e.message],
            )

        return PublishResult(
            checkin_ref=checkin_ref,
            address_ref=address_ref,
            checkin=checkin,
            crosspost=record,
        )
