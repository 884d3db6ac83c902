"""
External contract of Marketplace Bridge.

``MarketplaceBridge`` builds every collaborator once (vault, store, token
cache, rate limiter, coalescer, HTTP client) and injects them, so one instance
per process owns all mutable state.

Usage:
    async with MarketplaceBridge() as bridge:
        result = await bridge.fetch_all_listings("tenant-1")
"""

from typing import Optional

import httpx
from sqlalchemy.orm import sessionmaker

from marketplace_bridge.api.client import MarketplaceAPIClient
from marketplace_bridge.cache.listing_cache import ListingCache
from marketplace_bridge.database.connection import create_session_factory
from marketplace_bridge.database.credential_store import CredentialSnapshot, CredentialStore
from marketplace_bridge.marketplaces.base import AggregationResult
from marketplace_bridge.marketplaces.hybrid_client import HybridAggregationClient
from marketplace_bridge.security.encryption import CredentialVault
from marketplace_bridge.services.connection import ConnectionService, ConnectionStatus
from marketplace_bridge.services.credential_resolver import CredentialResolver
from marketplace_bridge.services.oauth import AuthorizationRequest, AuthorizationService
from marketplace_bridge.services.token_service import AccessTokenCache, TokenService
from marketplace_bridge.utils.coalescing import RequestCoalescer
from marketplace_bridge.utils.config import BridgeConfig, get_config
from marketplace_bridge.utils.logger import get_logger
from marketplace_bridge.utils.rate_limiting import RateLimitConfig, RateLimiter
from marketplace_bridge.utils.retry import RetryConfig, RetryPolicy

logger = get_logger(__name__)


class MarketplaceBridge:
    """Facade over credential management, tokens and listing aggregation."""

    def __init__(self, config: Optional[BridgeConfig] = None,
                 session_factory: Optional[sessionmaker] = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 listing_cache: Optional[ListingCache] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 token_cache: Optional[AccessTokenCache] = None):
        self.config = config or get_config()

        self.vault = CredentialVault(self.config.encryption_key)
        self.session_factory = session_factory or create_session_factory(self.config.database_url)
        self.store = CredentialStore(self.session_factory)

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=self.config.http_timeout)

        if listing_cache is None and self.config.redis_url:
            listing_cache = ListingCache(self.config.redis_url, self.config.listing_cache_ttl)
        self.listing_cache = listing_cache

        self.coalescer = RequestCoalescer()
        self.rate_limiter = rate_limiter or RateLimiter(RateLimitConfig.from_config(self.config))
        self.retry_policy = retry_policy or RetryPolicy(RetryConfig.from_config(self.config))

        self.resolver = CredentialResolver(self.store, self.vault, self.config)
        self.token_service = TokenService(
            self.resolver, self.store, self.http_client, self.config,
            cache=token_cache or AccessTokenCache(buffer=self.config.token_expiry_buffer),
            coalescer=self.coalescer,
            retry_policy=self.retry_policy,
        )
        self.authorization = AuthorizationService(
            self.resolver, self.store, self.vault, self.token_service,
            self.http_client, self.config,
        )
        self.connections = ConnectionService(
            self.resolver, self.token_service, self.store, self.listing_cache
        )
        self.aggregator = HybridAggregationClient(
            self.get_handle,
            self.rate_limiter,
            self.coalescer,
            max_concurrent_offers=self.config.max_concurrent_offers,
            listing_cache=self.listing_cache,
        )

        logger.info(f"Marketplace bridge ready (encryption configured: {self.vault.is_configured}, "
                    f"listing cache: {self.listing_cache is not None})")

    def get_handle(self, tenant_id: str) -> MarketplaceAPIClient:
        """Live API handle for the tenant, backed by the token service."""
        return MarketplaceAPIClient(
            tenant_id,
            self.token_service,
            self.http_client,
            self.config,
            self.rate_limiter,
            self.retry_policy,
        )

    async def fetch_all_listings(self, tenant_id: str, use_cache: bool = True) -> AggregationResult:
        return await self.aggregator.fetch_all_listings(tenant_id, use_cache=use_cache)

    async def get_connection_status(self, tenant_id: str) -> ConnectionStatus:
        return await self.connections.get_connection_status(tenant_id)

    def disconnect(self, tenant_id: str) -> bool:
        return self.connections.disconnect(tenant_id)

    def save_app_credentials(self, tenant_id: str, app_id: str,
                             app_secret: str) -> CredentialSnapshot:
        return self.authorization.save_app_credentials(tenant_id, app_id, app_secret)

    def build_authorization_url(self, tenant_id: str) -> AuthorizationRequest:
        return self.authorization.build_authorization_url(tenant_id)

    async def complete_authorization(self, tenant_id: str, code: str,
                                     state: str) -> CredentialSnapshot:
        return await self.authorization.complete_authorization(tenant_id, code, state)

    async def aclose(self) -> None:
        """Close the HTTP client if this bridge created it."""
        if self._owns_http_client:
            await self.http_client.aclose()
        logger.debug("Closed marketplace bridge")

    async def __aenter__(self) -> "MarketplaceBridge":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
