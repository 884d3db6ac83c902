"""
Hybrid aggregation over the catalog, offer and legacy statistics APIs.

One aggregation per tenant runs in three stages and a merge:

1. Catalog: every inventory item, paged. Failure aborts the aggregation.
2. Offers: one lookup per SKU, spaced by the rate limiter and bounded by
   ``max_concurrent_offers``. API failures become ``PartialFailure`` entries;
   auth and credential failures abort.
3. Statistics: a single GetMyeBaySelling call. Failure zeroes engagement and
   adds one ``PartialFailure`` entry.
4. Merge in catalog order, independent of offer completion order.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from marketplace_bridge.api.trading_xml import EngagementCounters
from marketplace_bridge.marketplaces.base import (
    AggregationResult, LISTING_URL_TEMPLATE, PartialFailure, UnifiedListing,
    map_listing_status,
)
from marketplace_bridge.utils.coalescing import RequestCoalescer
from marketplace_bridge.utils.exceptions import (
    MarketplaceAPIError, MarketplaceUnavailable, PartialAggregationFailure, RateLimited,
)
from marketplace_bridge.utils.logger import get_logger
from marketplace_bridge.utils.rate_limiting import RateLimiter

logger = get_logger(__name__)


STAGE_OFFER = "offer"
STAGE_STATISTICS = "statistics"

# Errors scoped to one lookup; auth, credential and configuration errors abort
PARTIAL_ERRORS = (MarketplaceAPIError, MarketplaceUnavailable, RateLimited, ValueError)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_float(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    try:
        return int(value) if value is not None else 0
    except (TypeError, ValueError):
        return 0


def listing_id_of(offer: Optional[Dict[str, Any]]) -> Optional[str]:
    """Published offers carry their listing id under ``listing.listingId``."""
    if not offer:
        return None
    listing = offer.get("listing") or {}
    listing_id = listing.get("listingId") or offer.get("listingId")
    return str(listing_id) if listing_id else None


def build_listing(item: Dict[str, Any], offer: Optional[Dict[str, Any]],
                  counters: Optional[EngagementCounters], synced_at: str) -> UnifiedListing:
    """Map one catalog item plus its primary offer and counters to a record."""
    product = item.get("product") or {}
    offer = offer or {}
    counters = counters or EngagementCounters()

    availability = (item.get("availability") or {}).get("shipToLocationAvailability") or {}
    quantity = _to_int(offer.get("availableQuantity"))
    if not quantity:
        quantity = _to_int(availability.get("quantity"))

    price = (offer.get("pricingSummary") or {}).get("price") or {}
    status = offer.get("status")
    listing_id = listing_id_of(offer)

    return UnifiedListing(
        sku=item.get("sku", ""),
        marketplace_item_id=listing_id,
        title=product.get("title") or "",
        description=product.get("description") or "",
        image_urls=list(product.get("imageUrls") or []),
        quantity=quantity,
        condition=item.get("condition"),
        category_id=offer.get("categoryId"),
        price=_to_float(price.get("value")),
        currency=price.get("currency") or "",
        status=status,
        listing_status=map_listing_status(status, quantity),
        marketplace_id=offer.get("marketplaceId"),
        offer_id=offer.get("offerId"),
        listing_format=offer.get("format"),
        listing_url=LISTING_URL_TEMPLATE.format(listing_id=listing_id) if listing_id else None,
        view_count=counters.view_count,
        watch_count=counters.watch_count,
        last_synced_at=synced_at,
    )


def merge_listings(catalog: List[Dict[str, Any]],
                   offers_by_sku: Dict[str, Optional[Dict[str, Any]]],
                   statistics: Dict[str, EngagementCounters],
                   synced_at: str) -> List[UnifiedListing]:
    """
    Join catalog items with offers (by SKU) and counters (by listing id).

    Output follows catalog order and depends only on the inputs.
    """
    listings = []
    for item in catalog:
        offer = offers_by_sku.get(item.get("sku"))
        listing_id = listing_id_of(offer)
        counters = statistics.get(listing_id) if listing_id else None
        listings.append(build_listing(item, offer, counters, synced_at))
    return listings


def _partial_failure(stage: str, error: Exception, sku: Optional[str] = None) -> PartialFailure:
    target = f"SKU {sku}" if sku else "listing statistics"
    failure = PartialAggregationFailure(f"Failed to fetch {stage} data for {target}: {error}")
    return PartialFailure(
        stage=stage,
        code=failure.code,
        message=failure.message,
        action=getattr(error, "action", failure.action),
        sku=sku,
        cause=getattr(error, "code", type(error).__name__),
    )


class HybridAggregationClient:
    """
    Produces the unified listing set for a tenant.

    Concurrent aggregations for the same tenant share one run.
    """

    def __init__(self, handle_factory: Callable[[str], Any], rate_limiter: RateLimiter,
                 coalescer: RequestCoalescer, max_concurrent_offers: int = 5,
                 listing_cache=None, clock: Callable[[], str] = _utc_timestamp):
        """
        Args:
            handle_factory: Returns a ``MarketplaceAPIClient`` for a tenant id
            rate_limiter: Shared limiter providing tenant batch spacing
            coalescer: Shared coalescer for in-flight aggregations
            max_concurrent_offers: Upper bound on simultaneous offer lookups
            listing_cache: Optional ``ListingCache`` populated after each run
            clock: Returns the sync timestamp stamped on every record
        """
        self.handle_factory = handle_factory
        self.rate_limiter = rate_limiter
        self.coalescer = coalescer
        self.max_concurrent_offers = max_concurrent_offers
        self.listing_cache = listing_cache
        self._clock = clock

    async def fetch_all_listings(self, tenant_id: str, use_cache: bool = True) -> AggregationResult:
        """
        Aggregate all listings for the tenant.

        Raises:
            Token, credential and catalog failures propagate, as do auth
            failures at any stage. Other offer and statistics failures are
            reported in ``AggregationResult.errors``.
        """
        if use_cache and self.listing_cache is not None:
            cached = self.listing_cache.get_listings(tenant_id)
            if cached is not None:
                logger.info(f"Serving {cached.total} cached listings for tenant {tenant_id}")
                return cached

        return await self.coalescer.coalesce(
            (tenant_id, "listings", "all"),
            lambda: self._aggregate(tenant_id),
        )

    async def _aggregate(self, tenant_id: str) -> AggregationResult:
        handle = self.handle_factory(tenant_id)

        async with self.rate_limiter.tenant_batch(tenant_id):
            logger.info(f"Starting listing aggregation for tenant {tenant_id}")
            catalog = await handle.fetch_catalog()

            offers_by_sku, errors = await self._fetch_offers(handle, catalog)
            statistics = await self._fetch_statistics(handle, offers_by_sku, errors)

        synced_at = self._clock()
        result = AggregationResult(
            listings=merge_listings(catalog, offers_by_sku, statistics, synced_at),
            errors=errors,
            synced_at=synced_at,
        )

        if errors:
            logger.warning(f"Aggregation for tenant {tenant_id} finished with "
                           f"{len(errors)} partial failure(s)")
        logger.info(f"Aggregated {result.total} listings for tenant {tenant_id}")

        if self.listing_cache is not None:
            self.listing_cache.set_listings(tenant_id, result)
        return result

    async def _fetch_offers(self, handle, catalog: List[Dict[str, Any]]
                            ) -> Tuple[Dict[str, Optional[Dict[str, Any]]], List[PartialFailure]]:
        semaphore = asyncio.Semaphore(self.max_concurrent_offers)
        skus = list(dict.fromkeys(item.get("sku") for item in catalog if item.get("sku")))

        async def fetch(sku: str):
            async with semaphore:
                try:
                    offers = await handle.get_offers(sku)
                    return offers[0] if offers else None, None
                except PARTIAL_ERRORS as e:
                    logger.warning(f"Offer fetch failed for SKU {sku}: {e}")
                    return None, _partial_failure(STAGE_OFFER, e, sku)

        tasks = [asyncio.ensure_future(fetch(sku)) for sku in skus]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        offers_by_sku: Dict[str, Optional[Dict[str, Any]]] = {}
        errors: List[PartialFailure] = []
        for sku, (offer, failure) in zip(skus, outcomes):
            offers_by_sku[sku] = offer
            if failure is not None:
                errors.append(failure)
        return offers_by_sku, errors

    async def _fetch_statistics(self, handle, offers_by_sku: Dict[str, Optional[Dict[str, Any]]],
                                errors: List[PartialFailure]) -> Dict[str, EngagementCounters]:
        if not any(listing_id_of(offer) for offer in offers_by_sku.values()):
            logger.info("No listing ids among offers, skipping statistics fetch")
            return {}

        try:
            return await handle.get_selling_statistics()
        except PARTIAL_ERRORS as e:
            logger.warning(f"Statistics fetch failed, engagement counters zeroed: {e}")
            errors.append(_partial_failure(STAGE_STATISTICS, e))
            return {}
