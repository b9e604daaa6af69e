from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UNAVAILABLE = "unavailable"


class SourceSite(str, Enum):
    CENTRIS = "Centris"
    DUPROPRIO = "DuProprio"


class ListingRecord(BaseModel):
    """One scraped property listing.

    Every field is always present. Missing text values hold the ``UNAVAILABLE``
    sentinel, missing numbers are ``None``; consumers never need key checks.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    source_url: str
    source_site: SourceSite
    address: str = UNAVAILABLE
    price: str = Field(UNAVAILABLE, description="Formatted CAD amount, e.g. $579,000")
    bedroom_count: Optional[int] = Field(None, ge=0)
    bathroom_count: Optional[float] = Field(None, ge=0)
    floor_levels: Optional[int] = None
    living_area: Optional[str] = Field(None, description="Canonical unit ft², m² allowed in parentheses")
    condo_fee: str = Field(UNAVAILABLE, description="Normalized to '$X / month'")
    contact: str = UNAVAILABLE

    def looks_good(self) -> bool:
        """True when at least one descriptive field carries a real value."""
        return (
            self.price != UNAVAILABLE
            or self.bedroom_count is not None
            or self.bathroom_count is not None
            or bool(self.living_area and self.living_area != UNAVAILABLE)
            or self.condo_fee != UNAVAILABLE
        )

    def with_address(self, address: str) -> "ListingRecord":
        return self.model_copy(update={"address": address or UNAVAILABLE})

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
