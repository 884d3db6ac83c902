"""
Connection status reporting and disconnect for marketplace tenants.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from marketplace_bridge.database.credential_store import CredentialStore
from marketplace_bridge.database.models import ConnectionState
from marketplace_bridge.services.credential_resolver import CredentialResolver
from marketplace_bridge.services.token_service import TokenService
from marketplace_bridge.utils.exceptions import (
    CredentialsNotConfigured, MarketplaceBridgeError, NotConnected
)
from marketplace_bridge.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ConnectionIssue:
    code: str
    message: str
    action: str

    @classmethod
    def from_error(cls, error: MarketplaceBridgeError) -> "ConnectionIssue":
        return cls(code=error.code, message=error.message, action=error.action)


@dataclass
class ConnectionStatus:
    """What a tenant's marketplace connection can do right now."""

    connected: bool
    has_credentials: bool
    can_sync: bool
    marketplace_user_id: Optional[str] = None
    connected_at: Optional[datetime] = None
    issues: List[ConnectionIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "has_credentials": self.has_credentials,
            "can_sync": self.can_sync,
            "marketplace_user_id": self.marketplace_user_id,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "issues": [issue.__dict__.copy() for issue in self.issues],
        }


class ConnectionService:
    """Answers "is this tenant connected" and tears connections down."""

    def __init__(self, resolver: CredentialResolver, token_service: TokenService,
                 store: CredentialStore, listing_cache=None):
        self.resolver = resolver
        self.token_service = token_service
        self.store = store
        self.listing_cache = listing_cache

    async def get_connection_status(self, tenant_id: str) -> ConnectionStatus:
        """
        Check credentials and obtain a token to prove connectivity.

        Every failure is reported as an issue with a remediation action.
        """
        try:
            credentials = self.resolver.resolve(tenant_id)
        except CredentialsNotConfigured as e:
            return ConnectionStatus(connected=False, has_credentials=False, can_sync=False,
                                    issues=[ConnectionIssue.from_error(e)])
        except NotConnected as e:
            snapshot = self.store.get(tenant_id)
            if snapshot is not None and snapshot.connection_status == ConnectionState.EXPIRED:
                e = NotConnected("Marketplace authorization expired. Please reconnect your account.",
                                 tenant_id=tenant_id)
            return ConnectionStatus(connected=False, has_credentials=True, can_sync=False,
                                    issues=[ConnectionIssue.from_error(e)])
        except MarketplaceBridgeError as e:
            # Unreadable stored secrets or an unusable vault key
            logger.warning(f"Credential resolution failed for tenant {tenant_id}: {e}")
            return ConnectionStatus(connected=False, has_credentials=True, can_sync=False,
                                    issues=[ConnectionIssue.from_error(e)])

        try:
            await self.token_service.get_access_token(tenant_id)
        except MarketplaceBridgeError as e:
            logger.warning(f"Connection check failed for tenant {tenant_id}: {e}")
            return ConnectionStatus(
                connected=False,
                has_credentials=True,
                can_sync=False,
                marketplace_user_id=credentials.marketplace_user_id,
                connected_at=credentials.connected_at,
                issues=[ConnectionIssue.from_error(e)],
            )

        return ConnectionStatus(
            connected=True,
            has_credentials=True,
            can_sync=True,
            marketplace_user_id=credentials.marketplace_user_id,
            connected_at=credentials.connected_at,
        )

    def disconnect(self, tenant_id: str) -> bool:
        """
        Clear the tenant's authorization, keeping its app credentials.

        Cached tokens and listings are dropped as well.
        """
        found = self.store.disconnect(tenant_id)
        self.token_service.revoke(tenant_id)
        if self.listing_cache is not None:
            self.listing_cache.invalidate(tenant_id)

        if not found:
            logger.info(f"Disconnect requested for unknown tenant {tenant_id}")
        return found
