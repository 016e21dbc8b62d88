from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PropertyMode(str, Enum):
    RENT = "rent"
    SALE = "sale"
    BOTH = "both"


class MatchLabel(str, Enum):
    PROPERTY_OWNER = "PROPERTY_OWNER"
    FRBO = "FRBO"
    FSBO = "FSBO"
    NONE = "NONE"


class DiscoveryWarning(str, Enum):
    NO_ZIPCODES = "no-zipcodes"
    NO_ZILLOW_RESULT = "no-zillow-result"
    SELECTORS_EMPTY = "selectors-empty"
    NO_NEXT_DATA = "no-next-data"
    NO_CANDIDATES = "no-candidates"
    OWNER_CARDS_EMPTY = "owner-cards-empty"
    BLOCKED = "blocked"
    ERROR = "error"


class _CamelModel(BaseModel):
    # camelCase on the wire for the HTTP layer, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ListingCandidate(_CamelModel):
    url: str = Field(..., description="Canonical detail URL, query stripped")
    zpid: Optional[str] = None
    address: Optional[str] = None
    price: Optional[str] = None
    beds: Optional[float] = None
    baths: Optional[float] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    badge_owner: bool = False
    suspected_type: Optional[PropertyMode] = None
    source: Optional[str] = Field(None, description="Harvest strategy that produced it")


class VerifiedListing(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    address: str = ""
    price: str = ""
    owner_name: str = ""
    phone: str = ""
    link: str
    property_type: PropertyMode
    match_label: MatchLabel = MatchLabel.NONE
    beds: Optional[float] = None
    baths: Optional[float] = None


class DiscoveryFilters(_CamelModel):
    min_bedrooms: int = 0
    max_price: int = 0
    skip_no_agents: bool = False
    skip_already_rented: bool = False
    skip_duplicate_photos: bool = False


class DiscoverySettings(_CamelModel):
    """Persisted search settings; the filter fields feed DiscoveryFilters."""

    property_type: PropertyMode = PropertyMode.BOTH
    zip_codes: List[str] = Field(default_factory=list)
    city_query: Optional[str] = None
    min_bedrooms: int = 0
    max_price: int = 0
    skip_no_agents: bool = False
    skip_already_rented: bool = False
    skip_duplicate_photos: bool = False

    def filters(self) -> DiscoveryFilters:
        return DiscoveryFilters(
            min_bedrooms=self.min_bedrooms,
            max_price=self.max_price,
            skip_no_agents=self.skip_no_agents,
            skip_already_rented=self.skip_already_rented,
            skip_duplicate_photos=self.skip_duplicate_photos,
        )


class DiscoveryResult(_CamelModel):
    listings: List[VerifiedListing] = Field(default_factory=list)
    warning: Optional[DiscoveryWarning] = None
    duration_ms: int = 0
    diagnostics: Dict[str, Any] = Field(default_factory=dict)
