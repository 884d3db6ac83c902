"""
Security utilities for Marketplace Bridge.
"""

from .encryption import (
    CredentialVault,
    generate_encryption_key,
    MIGRATION_PREFIX,
)

__all__ = [
    "CredentialVault",
    "generate_encryption_key",
    "MIGRATION_PREFIX",
]
