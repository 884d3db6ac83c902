"""
Unified data structures produced by marketplace aggregation.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


# Offer status -> listing status shown to users
LISTING_STATUS_MAP = {
    "PUBLISHED": "Active",
    "UNPUBLISHED": "Draft",
    "ENDED": "Ended",
    "INACTIVE": "Inactive",
}
UNKNOWN_LISTING_STATUS = "Unknown"

LISTING_URL_TEMPLATE = "https://www.ebay.com/itm/{listing_id}"


def map_listing_status(offer_status: Optional[str], quantity: int) -> str:
    """Derive the user-facing status; a published offer with nothing left is Ended."""
    if offer_status == "PUBLISHED" and quantity == 0:
        return "Ended"
    return LISTING_STATUS_MAP.get(offer_status or "", UNKNOWN_LISTING_STATUS)


@dataclass
class UnifiedListing:
    """One item merged from catalog, offer and engagement data."""

    # Identity
    sku: str
    marketplace_item_id: Optional[str] = None

    # Catalog
    title: str = ""
    description: str = ""
    image_urls: List[str] = field(default_factory=list)
    quantity: int = 0
    condition: Optional[str] = None
    category_id: Optional[str] = None

    # Offer
    price: float = 0.0
    currency: str = ""
    status: Optional[str] = None
    listing_status: str = UNKNOWN_LISTING_STATUS
    marketplace_id: Optional[str] = None
    offer_id: Optional[str] = None
    listing_format: Optional[str] = None
    listing_url: Optional[str] = None

    # Engagement
    view_count: int = 0
    watch_count: int = 0

    last_synced_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnifiedListing":
        return cls(**data)


@dataclass
class PartialFailure:
    """A non-fatal fetch failure attached to an aggregation result."""

    stage: str  # "offer" or "statistics"
    code: str
    message: str
    action: str
    sku: Optional[str] = None
    cause: Optional[str] = None  # code of the underlying error

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartialFailure":
        return cls(**data)


@dataclass
class AggregationResult:
    listings: List[UnifiedListing] = field(default_factory=list)
    errors: List[PartialFailure] = field(default_factory=list)
    synced_at: Optional[str] = None
    from_cache: bool = False

    @property
    def total(self) -> int:
        return len(self.listings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listings": [listing.to_dict() for listing in self.listings],
            "errors": [error.to_dict() for error in self.errors],
            "synced_at": self.synced_at,
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], from_cache: bool = False) -> "AggregationResult":
        return cls(
            listings=[UnifiedListing.from_dict(item) for item in data.get("listings", [])],
            errors=[PartialFailure.from_dict(item) for item in data.get("errors", [])],
            synced_at=data.get("synced_at"),
            from_cache=from_cache,
        )
