"""
Per-tenant marketplace API client.

A ``MarketplaceAPIClient`` is the handle external collaborators receive from
``MarketplaceBridge.get_handle``. It attaches the tenant's bearer token, spaces
calls through the shared ``RateLimiter`` and retries transient failures.

Supports:
1. Sell Inventory API: inventory_item (paged catalog) and offer?sku=
2. Trading API: GetMyeBaySelling (engagement counters) and GetUser
"""

from typing import Any, Dict, List, Optional

import httpx

from marketplace_bridge.api import trading_xml
from marketplace_bridge.api.trading_xml import EngagementCounters
from marketplace_bridge.utils.config import BridgeConfig
from marketplace_bridge.utils.exceptions import (
    MarketplaceAPIError, MarketplaceUnavailable, handle_api_error
)
from marketplace_bridge.utils.logger import get_logger
from marketplace_bridge.utils.rate_limiting import RateLimiter
from marketplace_bridge.utils.retry import RetryConfig, RetryPolicy

logger = get_logger(__name__)


INVENTORY_ITEM_PATH = "/sell/inventory/v1/inventory_item"
OFFER_PATH = "/sell/inventory/v1/offer"

RESOURCE_CATALOG = "catalog"
RESOURCE_OFFER = "offer"
RESOURCE_STATISTICS = "statistics"


async def _send(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
    """Issue one HTTP request, mapping transport failures to MarketplaceUnavailable."""
    try:
        logger.debug(f"Making {method} request to {url}")
        return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise MarketplaceUnavailable(f"Request timeout calling {url}", endpoint=url) from e
    except httpx.TransportError as e:
        raise MarketplaceUnavailable(f"Connection failed to {url}: {type(e).__name__}",
                                     endpoint=url) from e


async def fetch_user_id(client: httpx.AsyncClient, config: BridgeConfig,
                        access_token: str) -> Optional[str]:
    """Look up the seller's marketplace user id with a Trading GetUser call."""
    response = await _send(
        client, "POST", config.marketplace_trading_url,
        content=trading_xml.build_get_user_request(),
        headers=trading_xml.trading_headers(
            trading_xml.CALL_GET_USER, access_token,
            config.trading_site_id, config.trading_compatibility_level,
        ),
    )
    if response.is_error:
        handle_api_error(response, endpoint=trading_xml.CALL_GET_USER)
    return trading_xml.parse_user_id(response.text)


class MarketplaceAPIClient:
    """
    Live API handle for one tenant.

    Tokens come from the ``TokenService``; a 401 from a downstream API
    invalidates the cached token and the call is repeated once with a fresh one.
    """

    def __init__(self, tenant_id: str, token_service, http_client: httpx.AsyncClient,
                 config: BridgeConfig, rate_limiter: RateLimiter,
                 retry_policy: Optional[RetryPolicy] = None):
        self.tenant_id = tenant_id
        self.token_service = token_service
        self.http_client = http_client
        self.config = config
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy or RetryPolicy(RetryConfig.from_config(config))
        self.base_url = config.marketplace_api_base_url.rstrip("/")

    def _headers(self, token: str, trading_call: Optional[str]) -> Dict[str, str]:
        if trading_call:
            return trading_xml.trading_headers(
                trading_call, token,
                self.config.trading_site_id, self.config.trading_compatibility_level,
            )
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, resource_key: str,
                       trading_call: Optional[str] = None, **kwargs) -> httpx.Response:
        """
        Make an authenticated, rate limited request with retries.

        Raises:
            MarketplaceAuthFailed: Still 401/403 after a token refresh
            RateLimited, MarketplaceUnavailable: After retries are exhausted
            MarketplaceAPIError: Any other non-success status
        """
        token = await self.token_service.get_access_token(self.tenant_id)
        reauthorized = False

        async def call(access_token: str) -> httpx.Response:
            return await self.rate_limiter.schedule(
                self.tenant_id, resource_key,
                lambda: _send(self.http_client, method, url,
                              headers=self._headers(access_token, trading_call), **kwargs),
            )

        async def attempt() -> httpx.Response:
            nonlocal token, reauthorized
            response = await call(token)

            if response.status_code == 401 and not reauthorized:
                reauthorized = True
                logger.warning(f"{resource_key} call for tenant {self.tenant_id} got 401, "
                               f"refreshing access token")
                self.token_service.invalidate(self.tenant_id)
                token = await self.token_service.get_access_token(self.tenant_id)
                response = await call(token)

            if response.is_error:
                handle_api_error(response, endpoint=url)
            return response

        return await self.retry_policy.execute(attempt)

    async def list_inventory_items(self, limit: int = 100, offset: int = 0) -> Dict[str, Any]:
        """Fetch one page of catalog items."""
        response = await self._request(
            "GET", f"{self.base_url}{INVENTORY_ITEM_PATH}", RESOURCE_CATALOG,
            params={"limit": limit, "offset": offset},
        )
        return response.json()

    async def fetch_catalog(self, page_size: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Fetch every catalog item, following pagination.

        Any page failure propagates; there is no partial catalog.
        """
        limit = page_size or self.config.catalog_page_size
        offset = 0
        items: List[Dict[str, Any]] = []

        while True:
            page = await self.list_inventory_items(limit=limit, offset=offset)
            page_items = page.get("inventoryItems") or []
            items.extend(page_items)

            total = page.get("total")
            offset += limit
            if not page_items or len(page_items) < limit:
                break
            if total is not None and offset >= int(total):
                break

        logger.info(f"Fetched {len(items)} catalog items for tenant {self.tenant_id}")
        return items

    async def get_offers(self, sku: str) -> List[Dict[str, Any]]:
        """Fetch the offers for ``sku``; a SKU without offers yields an empty list."""
        try:
            response = await self._request(
                "GET", f"{self.base_url}{OFFER_PATH}", RESOURCE_OFFER,
                params={"sku": sku},
            )
        except MarketplaceAPIError as e:
            if e.status_code == 404:
                logger.debug(f"No offers for SKU {sku}")
                return []
            raise
        return response.json().get("offers") or []

    async def get_selling_statistics(self, entries_per_page: Optional[int] = None
                                     ) -> Dict[str, EngagementCounters]:
        """Fetch view/watch counters for all active listings in one Trading call."""
        response = await self._request(
            "POST", self.config.marketplace_trading_url, RESOURCE_STATISTICS,
            trading_call=trading_xml.CALL_GET_MY_EBAY_SELLING,
            content=trading_xml.build_selling_request(
                entries_per_page or self.config.statistics_entries_per_page
            ),
        )
        return trading_xml.parse_selling_statistics(response.text)
