"""
Marketplace aggregation layer for Marketplace Bridge.

Merges the catalog, offer and legacy statistics APIs into unified listings.
"""

from .base import (
    AggregationResult,
    PartialFailure,
    UnifiedListing,
)
from .hybrid_client import HybridAggregationClient, merge_listings

__all__ = [
    "AggregationResult",
    "PartialFailure",
    "UnifiedListing",
    "HybridAggregationClient",
    "merge_listings",
]
