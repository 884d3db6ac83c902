"""
Repository for tenant credential records and pending OAuth states.

Callers receive detached ``CredentialSnapshot`` values; secrets stay encrypted
here and are only decrypted by ``CredentialResolver``.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.orm import sessionmaker

from marketplace_bridge.database.connection import session_scope
from marketplace_bridge.database.models import (
    ConnectionState, OAuthState, TenantCredential, utcnow
)
from marketplace_bridge.security.encryption import CredentialVault
from marketplace_bridge.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CredentialSnapshot:
    """Read-only copy of a ``TenantCredential`` row."""

    tenant_id: str
    app_id: Optional[str]
    app_secret_encrypted: Optional[str]
    refresh_token_encrypted: Optional[str]
    marketplace_user_id: Optional[str]
    connection_status: ConnectionState
    connected_at: Optional[datetime]
    updated_at: Optional[datetime]

    @property
    def has_app_credentials(self) -> bool:
        return bool(self.app_id and self.app_secret_encrypted)

    @classmethod
    def from_model(cls, record: TenantCredential) -> "CredentialSnapshot":
        return cls(
            tenant_id=record.tenant_id,
            app_id=record.app_id,
            app_secret_encrypted=record.app_secret_encrypted,
            refresh_token_encrypted=record.refresh_token_encrypted,
            marketplace_user_id=record.marketplace_user_id,
            connection_status=ConnectionState(record.connection_status),
            connected_at=record.connected_at,
            updated_at=record.updated_at,
        )


class CredentialStore:
    """SQLAlchemy-backed persistence for credentials and OAuth states."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _get_or_create(self, db, tenant_id: str) -> TenantCredential:
        record = db.query(TenantCredential).filter_by(tenant_id=tenant_id).one_or_none()
        if record is None:
            record = TenantCredential(tenant_id=tenant_id,
                                      connection_status=ConnectionState.DISCONNECTED)
            db.add(record)
            logger.info(f"Created credential record for tenant {tenant_id}")
        return record

    def get(self, tenant_id: str) -> Optional[CredentialSnapshot]:
        with session_scope(self.session_factory) as db:
            record = db.query(TenantCredential).filter_by(tenant_id=tenant_id).one_or_none()
            return CredentialSnapshot.from_model(record) if record else None

    def save_app_credentials(self, tenant_id: str, app_id: str,
                             app_secret_encrypted: str) -> CredentialSnapshot:
        """Create or update the tenant's application credentials."""
        if not CredentialVault.is_encrypted(app_secret_encrypted):
            raise ValueError("App secret must be stored encrypted")

        with session_scope(self.session_factory) as db:
            record = self._get_or_create(db, tenant_id)
            record.app_id = app_id
            record.app_secret_encrypted = app_secret_encrypted
            db.flush()
            logger.info(f"Saved app credentials for tenant {tenant_id}")
            return CredentialSnapshot.from_model(record)

    def save_authorization(self, tenant_id: str, refresh_token_encrypted: str,
                           marketplace_user_id: Optional[str] = None) -> CredentialSnapshot:
        """Store a freshly issued refresh token and mark the tenant connected."""
        if not CredentialVault.is_encrypted(refresh_token_encrypted):
            raise ValueError("Refresh token must be stored encrypted")

        with session_scope(self.session_factory) as db:
            record = self._get_or_create(db, tenant_id)
            record.refresh_token_encrypted = refresh_token_encrypted
            record.marketplace_user_id = marketplace_user_id
            record.connection_status = ConnectionState.CONNECTED
            record.connected_at = utcnow()
            db.flush()
            logger.info(f"Tenant {tenant_id} connected")
            return CredentialSnapshot.from_model(record)

    def disconnect(self, tenant_id: str) -> bool:
        """
        Drop authorization but keep the application credentials.

        Returns:
            False when the tenant has no record.
        """
        with session_scope(self.session_factory) as db:
            record = db.query(TenantCredential).filter_by(tenant_id=tenant_id).one_or_none()
            if record is None:
                return False
            record.refresh_token_encrypted = None
            record.marketplace_user_id = None
            record.connected_at = None
            record.connection_status = ConnectionState.DISCONNECTED
            logger.info(f"Tenant {tenant_id} disconnected")
            return True

    def mark_expired(self, tenant_id: str) -> None:
        """
        Flag the connection as expired.

        The refresh token is nulled as well so the record keeps
        ``connected`` reserved for tenants holding a usable token.
        """
        with session_scope(self.session_factory) as db:
            record = db.query(TenantCredential).filter_by(tenant_id=tenant_id).one_or_none()
            if record is None:
                return
            record.refresh_token_encrypted = None
            record.connection_status = ConnectionState.EXPIRED
            logger.warning(f"Marked marketplace connection expired for tenant {tenant_id}")

    def save_oauth_state(self, state: str, tenant_id: str, code_verifier: str) -> None:
        with session_scope(self.session_factory) as db:
            db.add(OAuthState(state=state, tenant_id=tenant_id, code_verifier=code_verifier))

    def pop_oauth_state(self, state: str) -> Optional[Tuple[str, str, datetime]]:
        """
        Consume a pending authorization state.

        Returns:
            ``(tenant_id, code_verifier, created_at)`` or None if unknown.
        """
        with session_scope(self.session_factory) as db:
            record = db.get(OAuthState, state)
            if record is None:
                return None
            result = (record.tenant_id, record.code_verifier, record.created_at)
            db.delete(record)
            return result

    def purge_oauth_states(self, older_than: datetime) -> int:
        """Delete states created before ``older_than``."""
        with session_scope(self.session_factory) as db:
            count = db.query(OAuthState).filter(OAuthState.created_at < older_than).delete()
            if count:
                logger.debug(f"Purged {count} expired OAuth states")
            return count
