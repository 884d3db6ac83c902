"""
Resolution of the marketplace credentials to use for a tenant.

This module is the only reader of the operator-wide application credentials.
Tenant-owned credentials always win; when they exist but cannot be decrypted
the error propagates instead of silently switching to the operator identity.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from marketplace_bridge.database.credential_store import CredentialSnapshot, CredentialStore
from marketplace_bridge.security.encryption import CredentialVault
from marketplace_bridge.utils.config import BridgeConfig
from marketplace_bridge.utils.exceptions import CredentialsNotConfigured, NotConnected
from marketplace_bridge.utils.logger import get_logger

logger = get_logger(__name__)


SOURCE_TENANT = "tenant"
SOURCE_GLOBAL = "global"


@dataclass(frozen=True)
class AppCredentials:
    app_id: str
    app_secret: str = field(repr=False)
    source: str = SOURCE_TENANT


@dataclass(frozen=True)
class ResolvedCredentials:
    """Everything needed to exchange a tenant's refresh token."""

    app_id: str
    app_secret: str = field(repr=False)
    refresh_token: str = field(repr=False)
    marketplace_user_id: Optional[str] = None
    source: str = SOURCE_TENANT
    connected_at: Optional[datetime] = None


class CredentialResolver:
    """Single entry point for turning stored records into usable credentials."""

    def __init__(self, store: CredentialStore, vault: CredentialVault, config: BridgeConfig):
        self.store = store
        self.vault = vault
        self._global_app_id = config.marketplace_app_id
        self._global_app_secret = config.marketplace_app_secret

    @property
    def has_global_credentials(self) -> bool:
        return bool(self._global_app_id and self._global_app_secret)

    def _app_credentials(self, tenant_id: str,
                         snapshot: Optional[CredentialSnapshot]) -> AppCredentials:
        if snapshot is not None and snapshot.has_app_credentials:
            # Decryption errors propagate; never fall back to the operator identity
            app_secret = self.vault.decrypt(snapshot.app_secret_encrypted)
            logger.debug(f"Using tenant app credentials for {tenant_id}")
            return AppCredentials(snapshot.app_id, app_secret, SOURCE_TENANT)

        if self.has_global_credentials:
            logger.debug(f"Using operator-wide app credentials for {tenant_id}")
            return AppCredentials(self._global_app_id, self._global_app_secret, SOURCE_GLOBAL)

        logger.warning(f"No marketplace app credentials available for tenant {tenant_id}")
        raise CredentialsNotConfigured(
            "Marketplace app credentials not configured. "
            "Add your App ID and App Secret in settings.",
            tenant_id=tenant_id,
        )

    def resolve_app_credentials(self, tenant_id: str) -> AppCredentials:
        """Resolve only the application credentials (used by the authorization flow)."""
        return self._app_credentials(tenant_id, self.store.get(tenant_id))

    def resolve(self, tenant_id: str) -> ResolvedCredentials:
        """
        Resolve app credentials and the decrypted refresh token.

        Raises:
            CredentialsNotConfigured: No app credentials at any tier
            MigrationRequired, MalformedCiphertext: A tenant secret is unreadable
            NotConnected: Tenant never completed authorization
            EncryptionKeyError: Vault key missing or invalid
        """
        snapshot = self.store.get(tenant_id)
        app = self._app_credentials(tenant_id, snapshot)

        if snapshot is None or not snapshot.refresh_token_encrypted:
            logger.warning(f"Tenant {tenant_id} has no refresh token on file")
            raise NotConnected(
                "Marketplace account not connected. Please connect your account.",
                tenant_id=tenant_id,
            )

        refresh_token = self.vault.decrypt(snapshot.refresh_token_encrypted)

        return ResolvedCredentials(
            app_id=app.app_id,
            app_secret=app.app_secret,
            refresh_token=refresh_token,
            marketplace_user_id=snapshot.marketplace_user_id,
            source=app.source,
            connected_at=snapshot.connected_at,
        )
