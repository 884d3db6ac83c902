"""
SQLAlchemy database models for Marketplace Bridge.

Models:
- TenantCredential: Per-tenant application credentials and refresh token
- OAuthState: Pending authorization requests (PKCE verifier + state)
"""

from .base import Base, utcnow
from .credential import TenantCredential, ConnectionState
from .oauth_state import OAuthState

__all__ = [
    "Base",
    "utcnow",
    "TenantCredential",
    "ConnectionState",
    "OAuthState",
]
