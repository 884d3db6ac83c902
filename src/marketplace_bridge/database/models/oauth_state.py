"""
OAuthState model - pending authorization requests awaiting their callback.
"""

from sqlalchemy import Column, String, DateTime, Text

from .base import Base, utcnow


class OAuthState(Base):
    """
    One-time state issued with an authorization URL.

    Holds the PKCE code verifier until the callback exchanges the code.
    """

    __tablename__ = "marketplace_oauth_states"

    state = Column(String(128), primary_key=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    code_verifier = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<OAuthState(tenant_id='{self.tenant_id}', created_at={self.created_at})>"
