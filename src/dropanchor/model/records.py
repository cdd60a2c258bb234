"""AT Protocol lexicon records written by the Anchor check-in pipeline.

Field names follow the lexicons (camelCase, ``$type``) through aliases, so a
record's wire form is ``record.to_record()`` and it can be parsed back with
``Model.model_validate(value)``.

Collections:
- community.lexicon.location.address: the venue's address
- app.dropanchor.checkin: the check-in, referencing the address by StrongRef
- app.bsky.feed.post: the optional feed crosspost
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, field_serializer

ADDRESS_COLLECTION = "community.lexicon.location.address"
CHECKIN_COLLECTION = "app.dropanchor.checkin"
POST_COLLECTION = "app.bsky.feed.post"

LINK_FEATURE = "app.bsky.richtext.facet#link"
MENTION_FEATURE = "app.bsky.richtext.facet#mention"
TAG_FEATURE = "app.bsky.richtext.facet#tag"


def format_datetime(value: datetime) -> str:
    """Format a datetime the way AT Protocol records expect (UTC, millis, ``Z``)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (
        value.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class LexiconModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class AtUri(BaseModel):
    """Parsed ``at://<repo>/<collection>/<rkey>`` record URI."""

    repo: str
    collection: str
    rkey: str

    @classmethod
    def parse(cls, uri: str) -> "AtUri":
        if not uri.startswith("at://"):
            raise ValueError(f"Not an at:// URI: {uri}")
        parts = uri.removeprefix("at://").split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Not a record URI: {uri}")
        return cls(repo=parts[0], collection=parts[1], rkey=parts[2])

    def __str__(self) -> str:
        return f"at://{self.repo}/{self.collection}/{self.rkey}"


class StrongRef(LexiconModel):
    """A record URI pinned to the content hash (CID) the PDS returned for it."""

    uri: str
    cid: str

    @property
    def at_uri(self) -> AtUri:
        return AtUri.parse(self.uri)

    @property
    def rkey(self) -> str:
        return self.at_uri.rkey


class AddressRecord(LexiconModel):
    record_type: Literal["community.lexicon.location.address"] = Field(
        default=ADDRESS_COLLECTION, alias="$type"
    )
    name: Optional[str] = None
    street: Optional[str] = None
    locality: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = Field(default=None, alias="postalCode")

    @property
    def display_name(self) -> Optional[str]:
        return self.name or self.street

    @property
    def coordinate(self) -> None:
        return None


class GeoCoordinates(LexiconModel):
    """
    WGS84 coordinates of a check-in.

    Serialized as decimal strings because the AT Protocol data model has no
    floating point type.
    """

    lat: float = Field(alias="latitude", ge=-90, le=90)
    lon: float = Field(alias="longitude", ge=-180, le=180)

    @field_serializer("lat", "lon")
    def serialize_degrees(self, value: float) -> str:
        return format(value, ".6f").rstrip("0").rstrip(".")

    @property
    def display_name(self) -> None:
        return None

    @property
    def coordinate(self) -> Tuple[float, float]:
        return (self.lat, self.lon)

    @property
    def street(self) -> None:
        return None

    @property
    def locality(self) -> None:
        return None

    @property
    def region(self) -> None:
        return None

    @property
    def country(self) -> None:
        return None

    @property
    def postal_code(self) -> None:
        return None


class CheckinImage(LexiconModel):
    image: Dict[str, Any]
    alt: Optional[str] = None


class CheckinRecord(LexiconModel):
    record_type: Literal["app.dropanchor.checkin"] = Field(
        default=CHECKIN_COLLECTION, alias="$type"
    )
    text: str
    created_at: str = Field(alias="createdAt")
    address_ref: StrongRef = Field(alias="addressRef")
    coordinates: GeoCoordinates
    image: Optional[CheckinImage] = None
    category: Optional[str] = None
    category_group: Optional[str] = Field(default=None, alias="categoryGroup")
    category_icon: Optional[str] = Field(default=None, alias="categoryIcon")


class ByteSlice(LexiconModel):
    """Half-open range of UTF-8 byte offsets into a post's text."""

    byte_start: int = Field(alias="byteStart", ge=0)
    byte_end: int = Field(alias="byteEnd", ge=0)


class LinkFeature(LexiconModel):
    feature_type: Literal["app.bsky.richtext.facet#link"] = Field(
        default=LINK_FEATURE, alias="$type"
    )
    uri: str


class MentionFeature(LexiconModel):
    feature_type: Literal["app.bsky.richtext.facet#mention"] = Field(
        default=MENTION_FEATURE, alias="$type"
    )
    did: str


class TagFeature(LexiconModel):
    feature_type: Literal["app.bsky.richtext.facet#tag"] = Field(
        default=TAG_FEATURE, alias="$type"
    )
    tag: str


FacetFeature = Union[LinkFeature, MentionFeature, TagFeature]


class Facet(LexiconModel):
    index: ByteSlice
    features: List[FacetFeature]

    def slice_text(self, text: str) -> str:
        """Return the substring of ``text`` this facet covers."""
        return (
            text.encode("utf-8")[self.index.byte_start : self.index.byte_end]
            .decode("utf-8")
        )


class RecordEmbed(LexiconModel):
    embed_type: Literal["app.bsky.embed.record"] = Field(
        default="app.bsky.embed.record", alias="$type"
    )
    record: StrongRef


class FeedPost(LexiconModel):
    record_type: Literal["app.bsky.feed.post"] = Field(
        default=POST_COLLECTION, alias="$type"
    )
    text: str
    created_at: str = Field(alias="createdAt")
    facets: Optional[List[Facet]] = None
    embed: Optional[RecordEmbed] = None
    langs: Optional[List[str]] = None


class CrosspostRecord(BaseModel):
    """A feed post published alongside a check-in, with the ref the PDS returned."""

    model_config = ConfigDict(frozen=True)

    post: FeedPost
    ref: StrongRef

    @property
    def text(self) -> str:
        return self.post.text

    @property
    def facets(self) -> List[Facet]:
        return list(self.post.facets or [])
