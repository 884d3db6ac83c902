"""
Unit tests for the access token lifecycle
"""
import asyncio
import base64

import httpx
import pytest

from marketplace_bridge.database.models import ConnectionState
from marketplace_bridge.services.credential_resolver import CredentialResolver
from marketplace_bridge.services.token_service import (
    AccessTokenCache,
    TokenService,
)
from marketplace_bridge.utils.exceptions import (
    MarketplaceAPIError,
    MarketplaceAuthFailed,
    MarketplaceUnavailable,
    NotConnected,
    RateLimited,
)


@pytest.fixture
def token_service(store, vault, config, http_client, clock, retry_policy):
    resolver = CredentialResolver(store, vault, config)
    return TokenService(
        resolver, store, http_client, config,
        cache=AccessTokenCache(buffer=config.token_expiry_buffer, clock=clock),
        retry_policy=retry_policy,
    )


def token_calls(marketplace) -> int:
    return marketplace.count("/identity/v1/oauth2/token")


class TestAccessTokenCache:
    """Test cache freshness rules"""

    def test_fresh_until_buffer(self, clock):
        """Test that entries stop being served inside the expiry buffer"""
        cache = AccessTokenCache(buffer=60, clock=clock)
        cache.put("t1", "token", 7200)

        clock.advance(7000)
        assert cache.get("t1").token == "token"

        clock.advance(141)
        assert cache.get("t1") is None

    def test_boundary_is_stale(self, clock):
        """Test that a token exactly at the buffer edge is not served"""
        cache = AccessTokenCache(buffer=60, clock=clock)
        cache.put("t1", "token", 120)

        clock.advance(60)
        assert cache.get("t1") is None

    def test_tenants_are_isolated(self, clock):
        """Test that entries are keyed by tenant"""
        cache = AccessTokenCache(clock=clock)
        cache.put("t1", "token-1", 7200)

        assert cache.get("t2") is None
        assert cache.invalidate("t1") is True
        assert cache.invalidate("t1") is False
        assert len(cache) == 0

    def test_token_hidden_from_repr(self, clock):
        """Test that the token is not exposed through repr"""
        entry = AccessTokenCache(clock=clock).put("t1", "very-secret-token", 7200)

        assert "very-secret-token" not in repr(entry)


class TestTokenService:
    """Test token refresh behaviour"""

    async def test_refresh_then_cache(self, token_service, connect_tenant, marketplace):
        """Test that a fresh token is reused without another exchange"""
        connect_tenant("t1")

        assert await token_service.get_access_token("t1") == "access-token-1"
        assert await token_service.get_access_token("t1") == "access-token-1"

        assert token_calls(marketplace) == 1
        assert token_service.stats["cache_hits"] == 1

    async def test_refresh_request_shape(self, token_service, connect_tenant, marketplace):
        """Test the refresh grant form and Basic app credentials"""
        connect_tenant("t1", refresh_token="v^1.1#rt")

        await token_service.get_access_token("t1")

        request = marketplace.requests[0]
        expected = base64.b64encode(b"tenant-app:tenant-secret").decode()
        assert request.method == "POST"
        assert request.headers["Authorization"] == f"Basic {expected}"
        form = httpx.QueryParams(request.content.decode())
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "v^1.1#rt"

    async def test_refreshes_inside_buffer(self, token_service, connect_tenant, marketplace, clock):
        """Test that a token close to expiry is replaced"""
        connect_tenant("t1")
        await token_service.get_access_token("t1")

        clock.advance(7000)
        await token_service.get_access_token("t1")
        assert token_calls(marketplace) == 1

        clock.advance(141)
        marketplace.access_token = "access-token-2"
        assert await token_service.get_access_token("t1") == "access-token-2"
        assert token_calls(marketplace) == 2

    async def test_concurrent_callers_share_one_exchange(self, token_service, connect_tenant,
                                                         marketplace):
        """Test that simultaneous requests for one tenant hit the endpoint once"""
        connect_tenant("t1")

        tokens = await asyncio.gather(*(token_service.get_access_token("t1") for _ in range(10)))

        assert set(tokens) == {"access-token-1"}
        assert token_calls(marketplace) == 1

    async def test_concurrent_callers_share_failure(self, token_service, connect_tenant,
                                                    marketplace):
        """Test that a rejected refresh reaches every waiter"""
        connect_tenant("t1")
        marketplace.token_responses.append(
            httpx.Response(401, json={"error": "invalid_client"})
        )

        results = await asyncio.gather(
            *(token_service.get_access_token("t1") for _ in range(5)),
            return_exceptions=True,
        )

        assert all(isinstance(result, MarketplaceAuthFailed) for result in results)
        assert token_calls(marketplace) == 1

    async def test_different_tenants_refresh_independently(self, token_service, connect_tenant,
                                                           marketplace):
        """Test that tenants never share an exchange"""
        connect_tenant("t1")
        connect_tenant("t2")

        await asyncio.gather(token_service.get_access_token("t1"),
                             token_service.get_access_token("t2"))

        assert token_calls(marketplace) == 2

    async def test_auth_failure_not_retried(self, token_service, connect_tenant, marketplace,
                                            clock):
        """Test that a 401 fails at once and the next call tries again"""
        connect_tenant("t1")
        marketplace.token_responses.extend([
            httpx.Response(401, json={"error": "invalid_client"}),
            httpx.Response(401, json={"error": "invalid_client"}),
        ])

        with pytest.raises(MarketplaceAuthFailed) as exc_info:
            await token_service.get_access_token("t1")
        assert exc_info.value.action == "RECONNECT"
        assert token_calls(marketplace) == 1
        assert clock.sleeps == []

        with pytest.raises(MarketplaceAuthFailed):
            await token_service.get_access_token("t1")
        assert token_calls(marketplace) == 2

    async def test_invalid_grant_is_auth_failure(self, token_service, connect_tenant, marketplace):
        """Test that a 400 invalid_grant is an auth failure"""
        connect_tenant("t1")
        marketplace.token_responses.append(httpx.Response(
            400, json={"error": "invalid_grant",
                       "error_description": "the provided authorization refresh token is invalid"},
        ))

        with pytest.raises(MarketplaceAuthFailed) as exc_info:
            await token_service.get_access_token("t1")

        assert "refresh token is invalid" in exc_info.value.message
        assert exc_info.value.status_code == 400

    async def test_server_errors_retried(self, token_service, connect_tenant, marketplace, clock):
        """Test that 5xx responses are retried with backoff"""
        connect_tenant("t1")
        marketplace.token_responses.extend([
            httpx.Response(503, text="unavailable"),
            httpx.Response(502, text="bad gateway"),
        ])

        assert await token_service.get_access_token("t1") == "access-token-1"
        assert token_calls(marketplace) == 3
        assert clock.sleeps == [1.0, 2.0]

    async def test_server_errors_exhaust_retries(self, token_service, connect_tenant, marketplace):
        """Test that persistent 5xx responses surface as unavailable"""
        connect_tenant("t1")
        marketplace.token_responses.extend(httpx.Response(500, text="boom") for _ in range(3))

        with pytest.raises(MarketplaceUnavailable) as exc_info:
            await token_service.get_access_token("t1")

        assert exc_info.value.retryable is True
        assert token_calls(marketplace) == 3

    async def test_rate_limit_honours_retry_after(self, token_service, connect_tenant,
                                                  marketplace, clock):
        """Test that 429 waits for the Retry-After hint"""
        connect_tenant("t1")
        marketplace.token_responses.append(httpx.Response(429, headers={"Retry-After": "5"}))

        assert await token_service.get_access_token("t1") == "access-token-1"
        assert clock.sleeps == [5.0]

    async def test_rate_limit_exhausted(self, token_service, connect_tenant, marketplace):
        """Test that repeated 429 responses surface as RateLimited"""
        connect_tenant("t1")
        marketplace.token_responses.extend(
            httpx.Response(429, headers={"Retry-After": "1"}) for _ in range(3)
        )

        with pytest.raises(RateLimited) as exc_info:
            await token_service.get_access_token("t1")

        assert exc_info.value.retry_after == 1.0

    async def test_not_connected_makes_no_call(self, token_service, store, vault, marketplace):
        """Test that unconnected tenants fail before any network call"""
        store.save_app_credentials("t1", "app", vault.encrypt("secret"))

        with pytest.raises(NotConnected):
            await token_service.get_access_token("t1")

        assert marketplace.requests == []

    async def test_invalidate_forces_refresh(self, token_service, connect_tenant, marketplace):
        """Test that invalidation drops the cached token"""
        connect_tenant("t1")
        await token_service.get_access_token("t1")

        token_service.invalidate("t1")
        await token_service.get_access_token("t1")

        assert token_calls(marketplace) == 2

    async def test_store_token_seeds_cache(self, token_service, connect_tenant, marketplace):
        """Test that a seeded token is served without an exchange"""
        connect_tenant("t1")
        token_service.store_token("t1", "seeded", 7200)

        assert await token_service.get_access_token("t1") == "seeded"
        assert marketplace.requests == []

    async def test_missing_access_token_in_response(self, token_service, connect_tenant,
                                                    marketplace):
        """Test that a 200 without access_token is an API error"""
        connect_tenant("t1")
        marketplace.token_responses.append(httpx.Response(200, json={"expires_in": 7200}))

        with pytest.raises(MarketplaceAPIError) as exc_info:
            await token_service.get_access_token("t1")

        assert "access_token" in exc_info.value.message

    @pytest.mark.parametrize("body", [
        {"access_token": "short-lived", "expires_in": None},
        {"access_token": "short-lived"},
    ])
    async def test_missing_expiry_uses_default_lifetime(self, token_service, connect_tenant,
                                                        marketplace, clock, body):
        """Test that a null or absent expires_in falls back to two hours"""
        connect_tenant("t1")
        marketplace.token_responses.append(httpx.Response(200, json=body))

        assert await token_service.get_access_token("t1") == "short-lived"

        clock.advance(7000)
        assert await token_service.get_access_token("t1") == "short-lived"
        assert token_calls(marketplace) == 1

    async def test_revoke_detaches_in_flight_refresh(self, token_service, connect_tenant,
                                                     marketplace):
        """Test that a refresh outliving a revoke is not cached"""
        connect_tenant("t1")
        marketplace.token_gate = asyncio.Event()
        marketplace.token_requested = asyncio.Event()
        pending = asyncio.ensure_future(token_service.get_access_token("t1"))
        await marketplace.token_requested.wait()

        token_service.revoke("t1")
        assert token_service.coalescer.get_in_flight_count() == 0
        marketplace.token_gate.set()

        assert await pending == "access-token-1"
        assert token_calls(marketplace) == 2


class TestRefreshTokenExpiry:
    """Test detection of refresh tokens past their lifetime"""

    async def test_old_connection_marked_expired(self, token_service, connect_tenant, store,
                                                 marketplace, backdate_connection):
        """Test that an auth failure on an old connection expires it"""
        connect_tenant("t1")
        backdate_connection("t1", days=541)
        marketplace.token_responses.append(httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(MarketplaceAuthFailed):
            await token_service.get_access_token("t1")

        snapshot = store.get("t1")
        assert snapshot.connection_status == ConnectionState.EXPIRED
        assert snapshot.refresh_token_encrypted is None

    async def test_recent_connection_stays_connected(self, token_service, connect_tenant, store,
                                                     marketplace, backdate_connection):
        """Test that an auth failure on a recent connection keeps it"""
        connect_tenant("t1")
        backdate_connection("t1", days=30)
        marketplace.token_responses.append(httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(MarketplaceAuthFailed):
            await token_service.get_access_token("t1")

        assert store.get("t1").connection_status == ConnectionState.CONNECTED
