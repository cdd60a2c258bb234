"""Places a user can check in to.

Places come from OpenStreetMap (via the external place search) and carry the
element type and id needed to build their canonical URL.
"""

from enum import Enum
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable
from pydantic import BaseModel, ConfigDict, Field

from dropanchor.model.records import AddressRecord, GeoCoordinates

OSM_BASE_URL = "https://www.openstreetmap.org"

CATEGORY_TAGS = ("amenity", "leisure", "shop", "tourism")


@runtime_checkable
class LocationLike(Protocol):
    """Common read surface of every location representation."""

    @property
    def display_name(self) -> Optional[str]: ...

    @property
    def coordinate(self) -> Optional[Tuple[float, float]]: ...

    @property
    def street(self) -> Optional[str]: ...

    @property
    def locality(self) -> Optional[str]: ...

    @property
    def region(self) -> Optional[str]: ...

    @property
    def country(self) -> Optional[str]: ...

    @property
    def postal_code(self) -> Optional[str]: ...


class ElementType(str, Enum):
    node = "node"
    way = "way"
    relation = "relation"


class Place(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    element_type: ElementType = ElementType.node
    element_id: int = 0
    tags: Dict[str, str] = Field(default_factory=dict)
    street: Optional[str] = None
    locality: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    url: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.element_type.value}:{self.element_id}"

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def coordinate(self) -> Tuple[float, float]:
        return (self.latitude, self.longitude)

    @property
    def category(self) -> Optional[str]:
        tag = next((t for t in CATEGORY_TAGS if t in self.tags), None)
        if tag is None:
            return None
        return self.tags[tag]

    @property
    def category_group(self) -> Optional[str]:
        return next((t for t in CATEGORY_TAGS if t in self.tags), None)

    def canonical_url(self, base_url: str = OSM_BASE_URL) -> str:
        if self.url:
            return self.url
        return f"{base_url.rstrip('/')}/{self.element_type.value}/{self.element_id}"

    def to_address(self) -> AddressRecord:
        return AddressRecord(
            name=self.name,
            street=self.street or self.tags.get("addr:street"),
            locality=self.locality or self.tags.get("addr:city"),
            region=self.region or self.tags.get("addr:state"),
            country=self.country or self.tags.get("addr:country"),
            postal_code=self.postal_code or self.tags.get("addr:postcode"),
        )

    def to_coordinates(self) -> GeoCoordinates:
        return GeoCoordinates(lat=self.latitude, lon=self.longitude)
