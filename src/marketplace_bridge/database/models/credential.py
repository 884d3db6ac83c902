"""
TenantCredential model - per-tenant marketplace application credentials and
the encrypted refresh token obtained when the tenant authorized the app.
"""

import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Text, Index

from .base import Base, utcnow


class ConnectionState(str, enum.Enum):
    """Lifecycle state of a tenant's marketplace connection."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    EXPIRED = "expired"


class TenantCredential(Base):
    """
    Marketplace credentials of one tenant.

    Rows are never deleted; disconnecting nulls the refresh token and
    identity columns and keeps the application credentials for reconnection.
    Secrets are stored only as ``ivHex:ciphertextHex``.
    """

    __tablename__ = "tenant_marketplace_credentials"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    tenant_id = Column(String(255), nullable=False, unique=True, index=True)

    # Application credentials
    app_id = Column(String(255), nullable=True)
    app_secret_encrypted = Column(Text, nullable=True)

    # Authorization
    refresh_token_encrypted = Column(Text, nullable=True)
    marketplace_user_id = Column(String(255), nullable=True)
    connection_status = Column(
        SQLEnum(ConnectionState, values_callable=lambda e: [m.value for m in e]),
        default=ConnectionState.DISCONNECTED,
        nullable=False,
    )
    connected_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_tenant_credentials_status", "connection_status"),
    )

    def __repr__(self):
        return (f"<TenantCredential(tenant_id='{self.tenant_id}', "
                f"status={self.connection_status}, has_app_id={bool(self.app_id)})>")
