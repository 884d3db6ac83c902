"""
Access token lifecycle for marketplace tenants.

Per tenant the service moves through NoToken -> Fetching -> Valid -> Expiring
-> Fetching -> Valid; a rejected refresh token ends in MarketplaceAuthFailed
until the tenant reconnects. Cached tokens live only in process memory.
"""

import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

import httpx

from marketplace_bridge.database.credential_store import CredentialStore
from marketplace_bridge.database.models import utcnow
from marketplace_bridge.services.credential_resolver import CredentialResolver, ResolvedCredentials
from marketplace_bridge.utils.coalescing import RequestCoalescer
from marketplace_bridge.utils.config import BridgeConfig
from marketplace_bridge.utils.exceptions import (
    MarketplaceAPIError, MarketplaceAuthFailed, MarketplaceUnavailable, handle_api_error
)
from marketplace_bridge.utils.logger import get_logger, mask_secret
from marketplace_bridge.utils.retry import RetryConfig, RetryPolicy

logger = get_logger(__name__)


# Refresh-token rejections arrive as 400 invalid_grant as well as 401
TOKEN_AUTH_FAILURE_STATUSES = (400, 401)

# Lifetime assumed when the token response omits or nulls expires_in
DEFAULT_TOKEN_LIFETIME = 7200


@dataclass
class AccessTokenCacheEntry:
    tenant_id: str
    token: str = field(repr=False)
    expires_at: float  # epoch seconds

    def is_fresh(self, now: float, buffer: float) -> bool:
        return now + buffer < self.expires_at


class AccessTokenCache:
    """
    Process-local access token cache keyed by tenant.

    Entries keep the marketplace-reported expiry; ``buffer`` seconds are
    subtracted when deciding whether an entry is still usable.
    """

    def __init__(self, buffer: float = 60, clock: Callable[[], float] = time.time):
        self.buffer = buffer
        self._clock = clock
        self._entries: Dict[str, AccessTokenCacheEntry] = {}

    def get(self, tenant_id: str) -> Optional[AccessTokenCacheEntry]:
        """Return the entry for ``tenant_id`` if it is outside the expiry buffer."""
        entry = self._entries.get(tenant_id)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock(), self.buffer):
            logger.debug(f"Cached token for tenant {tenant_id} is inside the expiry buffer")
            return None
        return entry

    def put(self, tenant_id: str, token: str, expires_in: float) -> AccessTokenCacheEntry:
        entry = AccessTokenCacheEntry(tenant_id, token, self._clock() + float(expires_in))
        self._entries[tenant_id] = entry
        return entry

    def invalidate(self, tenant_id: str) -> bool:
        return self._entries.pop(tenant_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


async def request_token(client: httpx.AsyncClient, token_url: str, app_id: str,
                        app_secret: str, form: Dict[str, str]) -> Dict[str, Any]:
    """
    POST a grant to the OAuth token endpoint with HTTP Basic app credentials.

    Raises:
        MarketplaceAuthFailed: 400/401, the grant or app credentials were rejected
        RateLimited: 429
        MarketplaceUnavailable: 5xx or network failure
        MarketplaceAPIError: Any other failure or a malformed body
    """
    try:
        response = await client.post(
            token_url,
            data=form,
            auth=httpx.BasicAuth(app_id, app_secret),
            headers={"Accept": "application/json"},
        )
    except httpx.TransportError as e:
        raise MarketplaceUnavailable(
            f"Token endpoint unreachable: {type(e).__name__}", endpoint=token_url
        ) from e

    if response.status_code != 200:
        handle_api_error(response, endpoint=token_url,
                         auth_failure_statuses=TOKEN_AUTH_FAILURE_STATUSES)

    try:
        data = response.json()
    except ValueError as e:
        raise MarketplaceAPIError("Token endpoint returned a non-JSON body",
                                  status_code=response.status_code, endpoint=token_url) from e

    if not isinstance(data, dict) or not data.get("access_token"):
        raise MarketplaceAPIError("Token response missing access_token",
                                  status_code=response.status_code, endpoint=token_url)
    data["expires_in"] = data.get("expires_in") or DEFAULT_TOKEN_LIFETIME
    return data


class TokenService:
    """Hands out valid access tokens, refreshing at most once at a time per tenant."""

    def __init__(self, resolver: CredentialResolver, store: CredentialStore,
                 http_client: httpx.AsyncClient, config: BridgeConfig,
                 cache: Optional[AccessTokenCache] = None,
                 coalescer: Optional[RequestCoalescer] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        self.resolver = resolver
        self.store = store
        self.http_client = http_client
        self.token_url = config.marketplace_token_url
        self.refresh_token_lifetime = timedelta(days=config.refresh_token_lifetime_days)
        self.cache = cache or AccessTokenCache(buffer=config.token_expiry_buffer)
        self.coalescer = coalescer or RequestCoalescer()
        self.retry_policy = retry_policy or RetryPolicy(RetryConfig.from_config(config))

        self.stats = {"cache_hits": 0, "exchanges": 0, "failures": 0}
        # Bumped whenever a tenant's credentials change under an in-flight refresh
        self._generations: Dict[str, int] = {}

    async def get_access_token(self, tenant_id: str) -> str:
        """
        Get a valid access token for the tenant.

        Concurrent callers for one tenant share a single refresh exchange and
        all receive its outcome.
        """
        entry = self.cache.get(tenant_id)
        if entry is not None:
            self.stats["cache_hits"] += 1
            return entry.token

        return await self.coalescer.coalesce(
            self._refresh_key(tenant_id),
            lambda: self._refresh(tenant_id),
        )

    def _refresh_key(self, tenant_id: str) -> tuple:
        return (tenant_id, "token", "refresh")

    async def _refresh(self, tenant_id: str) -> str:
        generation = self._generations.get(tenant_id, 0)
        credentials = self.resolver.resolve(tenant_id)
        logger.info(f"Refreshing access token for tenant {tenant_id} "
                    f"(app credentials: {credentials.source})")

        try:
            data = await self.retry_policy.execute(self._exchange, credentials)
        except MarketplaceAuthFailed as e:
            self.stats["failures"] += 1
            logger.warning(f"Refresh token rejected for tenant {tenant_id}: {e.message}")
            self._expire_if_stale(tenant_id, credentials)
            raise
        except Exception as e:
            self.stats["failures"] += 1
            logger.error(f"Token refresh failed for tenant {tenant_id}: {e}")
            raise

        if self._generations.get(tenant_id, 0) != generation:
            logger.info(f"Credentials for tenant {tenant_id} changed during refresh, "
                        f"discarding the exchanged token")
            return await self.get_access_token(tenant_id)

        expires_in = data["expires_in"]
        entry = self.cache.put(tenant_id, data["access_token"], expires_in)
        logger.info(f"Access token for tenant {tenant_id} valid for {expires_in}s "
                    f"({mask_secret(entry.token)})")
        return entry.token

    async def _exchange(self, credentials: ResolvedCredentials) -> Dict[str, Any]:
        self.stats["exchanges"] += 1
        return await request_token(
            self.http_client,
            self.token_url,
            credentials.app_id,
            credentials.app_secret,
            {"grant_type": "refresh_token", "refresh_token": credentials.refresh_token},
        )

    def _expire_if_stale(self, tenant_id: str, credentials: ResolvedCredentials) -> None:
        """Refresh tokens stop working after their lifetime; flag such connections."""
        connected_at = credentials.connected_at
        if connected_at is not None and utcnow() - connected_at > self.refresh_token_lifetime:
            logger.warning(f"Tenant {tenant_id} connected {connected_at:%Y-%m-%d}, "
                           f"past the refresh token lifetime")
            self.store.mark_expired(tenant_id)

    def store_token(self, tenant_id: str, token: str, expires_in: float) -> None:
        """Seed the cache with a token obtained elsewhere (authorization code grant)."""
        self._detach_refresh(tenant_id)
        self.cache.put(tenant_id, token, expires_in)

    def revoke(self, tenant_id: str) -> None:
        """
        Forget every token for the tenant after its credentials changed.

        A refresh still in flight is detached: its result is not cached and
        its waiters retry against the current credentials.
        """
        self._detach_refresh(tenant_id)
        self.invalidate(tenant_id)

    def _detach_refresh(self, tenant_id: str) -> None:
        self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
        self.coalescer.discard(self._refresh_key(tenant_id))

    def invalidate(self, tenant_id: str) -> None:
        """Drop the cached token, e.g. after a downstream 401."""
        if self.cache.invalidate(tenant_id):
            logger.info(f"Invalidated cached access token for tenant {tenant_id}")
