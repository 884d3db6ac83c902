"""
Test configuration and fixtures for Marketplace Bridge
"""
import os

# Keep test runs from writing log files
os.environ.setdefault("LOG_DIR", "")

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

from marketplace_bridge.bridge import MarketplaceBridge
from marketplace_bridge.database.connection import create_session_factory, init_db, session_scope
from marketplace_bridge.database.credential_store import CredentialStore
from marketplace_bridge.database.models import TenantCredential, utcnow
from marketplace_bridge.security.encryption import CredentialVault
from marketplace_bridge.utils.config import BridgeConfig
from marketplace_bridge.utils.rate_limiting import RateLimitConfig, RateLimiter
from marketplace_bridge.utils.retry import RetryConfig, RetryPolicy


TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

TOKEN_PATH = "/identity/v1/oauth2/token"
INVENTORY_PATH = "/sell/inventory/v1/inventory_item"
OFFER_PATH = "/sell/inventory/v1/offer"
TRADING_PATH = "/ws/api.dll"


# =============================================================================
# Time
# =============================================================================

class FakeClock:
    """Manually advanced clock with a sleep that records and advances time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def config() -> BridgeConfig:
    """Isolated configuration that ignores the process environment's .env"""
    return BridgeConfig(
        _env_file=None,
        encryption_key=TEST_ENCRYPTION_KEY,
        marketplace_app_id=None,
        marketplace_app_secret=None,
        marketplace_redirect_uri="https://app.example.com/oauth/callback",
        database_url="sqlite:///:memory:",
        redis_url=None,
        log_dir="",
    )


@pytest.fixture
def global_config(config) -> BridgeConfig:
    """Configuration carrying operator-wide app credentials"""
    return config.model_copy(update={
        "marketplace_app_id": "global-app",
        "marketplace_app_secret": "global-secret",
    })


@pytest.fixture
def encryption_key() -> str:
    return TEST_ENCRYPTION_KEY


@pytest.fixture
def vault(encryption_key) -> CredentialVault:
    return CredentialVault(encryption_key)


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def session_factory():
    """In-memory SQLite shared through a StaticPool"""
    factory = create_session_factory("sqlite:///:memory:")
    init_db(factory)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def store(session_factory) -> CredentialStore:
    return CredentialStore(session_factory)


@pytest.fixture
def connect_tenant(store, vault):
    """Create a connected tenant with its own app credentials"""

    def _connect(tenant_id: str = "tenant-1", app_id: Optional[str] = "tenant-app",
                 app_secret: str = "tenant-secret",
                 refresh_token: str = "v^1.1#refresh-token",
                 user_id: Optional[str] = "seller_one"):
        if app_id:
            store.save_app_credentials(tenant_id, app_id, vault.encrypt(app_secret))
        return store.save_authorization(tenant_id, vault.encrypt(refresh_token), user_id)

    return _connect


@pytest.fixture
def backdate_connection(session_factory):
    """Move a tenant's connected_at into the past"""

    def _backdate(tenant_id: str, days: int) -> None:
        with session_scope(session_factory) as db:
            record = db.query(TenantCredential).filter_by(tenant_id=tenant_id).one()
            record.connected_at = utcnow() - timedelta(days=days)

    return _backdate


# =============================================================================
# Fake marketplace
# =============================================================================

def selling_xml(counters: Dict[str, Tuple[int, int]]) -> str:
    items = "".join(
        f"<Item><ItemID>{item_id}</ItemID><HitCount>{views}</HitCount>"
        f"<WatchCount>{watches}</WatchCount></Item>"
        for item_id, (views, watches) in counters.items()
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<GetMyeBaySellingResponse xmlns="urn:ebay:apis:eBLBaseComponents">'
        "<Ack>Success</Ack>"
        f"<ActiveList><ItemArray>{items}</ItemArray></ActiveList>"
        "</GetMyeBaySellingResponse>"
    )


GET_USER_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<GetUserResponse xmlns="urn:ebay:apis:eBLBaseComponents">'
    "<Ack>Success</Ack><User><UserID>seller_one</UserID></User>"
    "</GetUserResponse>"
)


class FakeMarketplace:
    """
    httpx handler emulating the token, inventory, offer and Trading endpoints.

    Responses can be overridden per endpoint; every request is recorded.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_responses: List[httpx.Response] = []
        self.access_token = "access-token-1"
        self.expires_in = 7200
        self.catalog: List[dict] = []
        self.catalog_status: Optional[int] = None
        self.offers: Dict[str, object] = {}
        self.downstream_401s = 0
        self.statistics: object = selling_xml({})
        # Optional async behaviour: hold token requests, stagger offer replies
        self.token_gate: Optional[asyncio.Event] = None
        self.token_requested: Optional[asyncio.Event] = None
        self.offer_delays: Dict[str, float] = {}

    def count(self, path: str, call_name: Optional[str] = None) -> int:
        return sum(
            1 for request in self.requests
            if request.url.path == path
            and (call_name is None or request.headers.get("X-EBAY-API-CALL-NAME") == call_name)
        )

    def add_item(self, sku: str, title: str = "Item", quantity: int = 1,
                 listing_id: Optional[str] = None, price: str = "10.00",
                 offer_status: str = "PUBLISHED") -> None:
        self.catalog.append({
            "sku": sku,
            "condition": "NEW",
            "product": {"title": title, "description": f"{title} description",
                        "imageUrls": [f"https://img.example.com/{sku}.jpg"]},
            "availability": {"shipToLocationAvailability": {"quantity": quantity}},
        })
        offer = {
            "offerId": f"offer-{sku}",
            "sku": sku,
            "marketplaceId": "EBAY_US",
            "format": "FIXED_PRICE",
            "availableQuantity": quantity,
            "categoryId": "1234",
            "status": offer_status,
            "pricingSummary": {"price": {"value": price, "currency": "USD"}},
        }
        if listing_id:
            offer["listing"] = {"listingId": listing_id, "listingStatus": "ACTIVE"}
        self.offers[sku] = [offer]

    def set_statistics(self, counters: Dict[str, Tuple[int, int]]) -> None:
        """Serve GetMyeBaySelling counters as {listing_id: (views, watches)}"""
        self.statistics = selling_xml(counters)

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_responses:
            return self.token_responses.pop(0)
        return httpx.Response(200, json={
            "access_token": self.access_token,
            "expires_in": self.expires_in,
            "token_type": "User Access Token",
            "refresh_token": "v^1.1#new-refresh-token",
        })

    def _inventory(self, request: httpx.Request) -> httpx.Response:
        if self.catalog_status:
            return httpx.Response(self.catalog_status, json={"errors": [{"message": "catalog down"}]})
        limit = int(request.url.params["limit"])
        offset = int(request.url.params["offset"])
        page = self.catalog[offset:offset + limit]
        return httpx.Response(200, json={
            "inventoryItems": page, "total": len(self.catalog), "limit": limit, "offset": offset,
        })

    def _offer(self, request: httpx.Request) -> httpx.Response:
        value = self.offers.get(request.url.params["sku"])
        if isinstance(value, int):
            return httpx.Response(value, json={"errors": [{"message": "offer lookup failed"}]})
        if not value:
            return httpx.Response(404, json={"errors": [{"errorId": 25713,
                                                         "message": "This Offer is not available."}]})
        return httpx.Response(200, json={"offers": value, "total": len(value)})

    def _trading(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("X-EBAY-API-CALL-NAME") == "GetUser":
            return httpx.Response(200, text=GET_USER_XML)
        if isinstance(self.statistics, int):
            return httpx.Response(self.statistics, text="Service Unavailable")
        return httpx.Response(200, text=self.statistics)

    async def async_handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == TOKEN_PATH and self.token_gate is not None:
            if self.token_requested is not None:
                self.token_requested.set()
            await self.token_gate.wait()
        if path == OFFER_PATH:
            delay = self.offer_delays.get(request.url.params["sku"])
            if delay:
                await asyncio.sleep(delay)
        return self.handler(request)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == TOKEN_PATH:
            return self._token(request)
        if self.downstream_401s and request.headers.get("Authorization", "").startswith("Bearer"):
            self.downstream_401s -= 1
            return httpx.Response(401, json={"errors": [{"message": "Invalid access token"}]})
        if path == INVENTORY_PATH:
            return self._inventory(request)
        if path == OFFER_PATH:
            return self._offer(request)
        if path == TRADING_PATH:
            return self._trading(request)
        return httpx.Response(404)


@pytest.fixture
def marketplace() -> FakeMarketplace:
    return FakeMarketplace()


@pytest_asyncio.fixture
async def http_client(marketplace):
    client = httpx.AsyncClient(transport=httpx.MockTransport(marketplace.async_handler))
    yield client
    await client.aclose()


@pytest.fixture
def retry_policy(clock) -> RetryPolicy:
    """Deterministic backoff that never really sleeps"""
    return RetryPolicy(RetryConfig(jitter=False), sleep=clock.sleep)


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(RateLimitConfig(request_interval=0, tenant_switch_interval=0))


@pytest_asyncio.fixture
async def bridge(config, session_factory, http_client, rate_limiter, retry_policy):
    bridge = MarketplaceBridge(
        config,
        session_factory=session_factory,
        http_client=http_client,
        rate_limiter=rate_limiter,
        retry_policy=retry_policy,
    )
    yield bridge
    await bridge.aclose()
