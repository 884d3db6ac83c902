"""
Caching layer for Marketplace Bridge.
"""

from .listing_cache import ListingCache

__all__ = ["ListingCache"]
