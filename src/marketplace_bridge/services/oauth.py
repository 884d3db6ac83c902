"""
Marketplace authorization (OAuth 2.0 authorization code grant with PKCE).

Flow:
1. ``build_authorization_url`` stores a one-time state and PKCE verifier
   and returns the consent URL for the tenant's app credentials.
2. The marketplace redirects back with ``code`` and ``state``.
3. ``complete_authorization`` consumes the state, exchanges the code and
   stores the encrypted refresh token, marking the tenant connected.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from marketplace_bridge.api.client import fetch_user_id
from marketplace_bridge.database.credential_store import CredentialSnapshot, CredentialStore
from marketplace_bridge.database.models import utcnow
from marketplace_bridge.security.encryption import CredentialVault
from marketplace_bridge.services.credential_resolver import CredentialResolver
from marketplace_bridge.services.token_service import TokenService, request_token
from marketplace_bridge.utils.config import BridgeConfig
from marketplace_bridge.utils.exceptions import (
    ConfigurationError, InvalidAuthorizationState, MarketplaceAPIError, MarketplaceBridgeError
)
from marketplace_bridge.utils.logger import get_logger, mask_secret

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str


def generate_code_verifier() -> str:
    """PKCE verifier: 43-128 characters from the unreserved set."""
    return secrets.token_urlsafe(64)[:128]


def generate_code_challenge(code_verifier: str) -> str:
    """S256 challenge: unpadded base64url of the verifier's SHA-256 digest."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _looks_like_jwt(token: str) -> bool:
    return token.count(".") == 2


class AuthorizationService:
    """Connects tenants to the marketplace and manages their app credentials."""

    def __init__(self, resolver: CredentialResolver, store: CredentialStore,
                 vault: CredentialVault, token_service: TokenService,
                 http_client: httpx.AsyncClient, config: BridgeConfig):
        self.resolver = resolver
        self.store = store
        self.vault = vault
        self.token_service = token_service
        self.http_client = http_client
        self.config = config

    def _require_redirect_uri(self) -> str:
        if not self.config.marketplace_redirect_uri:
            raise ConfigurationError("MARKETPLACE_REDIRECT_URI is not configured")
        return self.config.marketplace_redirect_uri

    def save_app_credentials(self, tenant_id: str, app_id: str,
                             app_secret: str) -> CredentialSnapshot:
        """Encrypt and store the tenant's own application credentials."""
        app_id = (app_id or "").strip()
        app_secret = (app_secret or "").strip()
        if not app_id or not app_secret:
            raise ValueError("Both app_id and app_secret are required")

        snapshot = self.store.save_app_credentials(
            tenant_id, app_id, self.vault.encrypt(app_secret)
        )
        # Tokens issued under the previous app credentials no longer apply
        self.token_service.revoke(tenant_id)
        logger.info(f"Stored app credentials for tenant {tenant_id} "
                    f"(app id {mask_secret(app_id, visible=8)})")
        return snapshot

    def build_authorization_url(self, tenant_id: str) -> AuthorizationRequest:
        """
        Create the consent URL for the tenant.

        Raises:
            CredentialsNotConfigured: No app credentials at any tier
            ConfigurationError: Redirect URI missing
        """
        redirect_uri = self._require_redirect_uri()
        app = self.resolver.resolve_app_credentials(tenant_id)

        self.store.purge_oauth_states(
            utcnow() - timedelta(seconds=self.config.oauth_state_ttl)
        )

        code_verifier = generate_code_verifier()
        state = secrets.token_hex(32)
        self.store.save_oauth_state(state, tenant_id, code_verifier)

        query = urlencode({
            "client_id": app.app_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.config.scopes),
            "state": state,
            "code_challenge": generate_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        })
        logger.info(f"Issued authorization URL for tenant {tenant_id} ({app.source} app credentials)")
        return AuthorizationRequest(url=f"{self.config.marketplace_authorize_url}?{query}", state=state)

    async def complete_authorization(self, tenant_id: str, code: str,
                                     state: str) -> CredentialSnapshot:
        """
        Exchange the authorization code and connect the tenant.

        Raises:
            InvalidAuthorizationState: Unknown, expired or foreign state
            MarketplaceAuthFailed: Code or app credentials rejected
            MarketplaceAPIError: No usable refresh token in the response
        """
        pending = self.store.pop_oauth_state(state) if state else None
        if pending is None:
            raise InvalidAuthorizationState("Invalid or already used authorization state",
                                            tenant_id=tenant_id)

        state_tenant, code_verifier, created_at = pending
        if state_tenant != tenant_id:
            logger.warning(f"Authorization state issued to {state_tenant} presented by {tenant_id}")
            raise InvalidAuthorizationState("Authorization state belongs to another tenant",
                                            tenant_id=tenant_id)
        if utcnow() - created_at > timedelta(seconds=self.config.oauth_state_ttl):
            raise InvalidAuthorizationState("Authorization state expired, please start again",
                                            tenant_id=tenant_id)

        redirect_uri = self._require_redirect_uri()
        app = self.resolver.resolve_app_credentials(tenant_id)

        data = await request_token(
            self.http_client,
            self.config.marketplace_token_url,
            app.app_id,
            app.app_secret,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
        )

        refresh_token = data.get("refresh_token")
        if not refresh_token:
            raise MarketplaceAPIError("No refresh token received from the marketplace",
                                      endpoint=self.config.marketplace_token_url)
        if _looks_like_jwt(refresh_token):
            raise MarketplaceAPIError(
                "Received an access token where a refresh token was expected; check OAuth scopes",
                endpoint=self.config.marketplace_token_url,
            )

        access_token = data["access_token"]
        marketplace_user_id = await self._lookup_user_id(tenant_id, access_token)

        snapshot = self.store.save_authorization(
            tenant_id, self.vault.encrypt(refresh_token), marketplace_user_id
        )
        self.token_service.store_token(tenant_id, access_token, data["expires_in"])

        logger.info(f"Tenant {tenant_id} authorized marketplace access "
                    f"(user {marketplace_user_id or 'unknown'})")
        return snapshot

    async def _lookup_user_id(self, tenant_id: str, access_token: str) -> Optional[str]:
        """The user id is informational; lookup failures do not block connecting."""
        try:
            return await fetch_user_id(self.http_client, self.config, access_token)
        except MarketplaceBridgeError as e:
            logger.warning(f"Could not fetch marketplace user id for tenant {tenant_id}: {e}")
            return None
