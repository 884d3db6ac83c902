"""
Configuration management for Marketplace Bridge.

Provides centralized configuration loading and validation using Pydantic
settings. Values come from environment variables or a local ``.env`` file.
"""

from datetime import datetime
from typing import Optional, Dict, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from marketplace_bridge.utils.logger import get_logger


logger = get_logger(__name__)


DEFAULT_SCOPES = " ".join([
    "https://api.ebay.com/oauth/api_scope",
    "https://api.ebay.com/oauth/api_scope/sell.inventory.readonly",
    "https://api.ebay.com/oauth/api_scope/sell.inventory",
    "https://api.ebay.com/oauth/api_scope/sell.account.readonly",
    "https://api.ebay.com/oauth/api_scope/sell.marketing.readonly",
    "https://api.ebay.com/oauth/api_scope/sell.analytics.readonly",
])


class BridgeConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Secrets at rest
    encryption_key: Optional[str] = Field(
        default=None, description="64 hex chars (32 bytes) AES-256 key"
    )

    # Operator-wide application credentials, only read by CredentialResolver
    marketplace_app_id: Optional[str] = Field(default=None)
    marketplace_app_secret: Optional[str] = Field(default=None)
    marketplace_redirect_uri: Optional[str] = Field(
        default=None, description="RuName / redirect URI registered with the marketplace"
    )

    # Endpoints
    marketplace_api_base_url: str = Field(default="https://api.ebay.com")
    marketplace_token_url: str = Field(
        default="https://api.ebay.com/identity/v1/oauth2/token"
    )
    marketplace_authorize_url: str = Field(
        default="https://auth.ebay.com/oauth2/authorize"
    )
    marketplace_trading_url: str = Field(default="https://api.ebay.com/ws/api.dll")
    marketplace_scopes: str = Field(default=DEFAULT_SCOPES)
    trading_site_id: str = Field(default="0")
    trading_compatibility_level: str = Field(default="967")

    # Token lifecycle
    token_expiry_buffer: int = Field(default=60, description="Seconds before expiry a token is refreshed")
    refresh_token_lifetime_days: int = Field(default=540, description="Refresh tokens live ~18 months")
    oauth_state_ttl: int = Field(default=600, description="Seconds an authorization request stays valid")

    # HTTP, retries and rate limiting
    http_timeout: float = Field(default=30.0)
    retry_max_attempts: int = Field(default=3)
    retry_base_delay: float = Field(default=1.0)
    retry_max_delay: float = Field(default=10.0)
    request_interval: float = Field(default=0.2, description="Spacing between calls per tenant/resource")
    tenant_switch_interval: float = Field(default=1.0, description="Spacing between batches of different tenants")
    max_concurrent_offers: int = Field(default=5)
    catalog_page_size: int = Field(default=100)
    statistics_entries_per_page: int = Field(default=200)

    # Storage
    database_url: str = Field(default="sqlite:///./marketplace_bridge.db")
    redis_url: Optional[str] = Field(default=None)
    listing_cache_ttl: int = Field(default=300)

    # Logging
    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="./logs")
    debug_mode: bool = Field(default=False)

    @field_validator('encryption_key', 'marketplace_app_id', 'marketplace_app_secret')
    @classmethod
    def strip_blank(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator('token_expiry_buffer')
    @classmethod
    def validate_buffer(cls, v):
        if v < 60:
            raise ValueError("Token expiry buffer must be at least 60 seconds")
        return v

    @field_validator('http_timeout', 'retry_base_delay', 'retry_max_delay')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Timeouts and delays must be positive")
        return v

    @field_validator('request_interval', 'tenant_switch_interval')
    @classmethod
    def validate_interval(cls, v):
        if v < 0:
            raise ValueError("Rate limit intervals cannot be negative")
        return v

    @field_validator('retry_max_attempts', 'max_concurrent_offers',
                     'catalog_page_size', 'statistics_entries_per_page')
    @classmethod
    def validate_count(cls, v):
        if v < 1:
            raise ValueError("Counts must be at least 1")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @property
    def scopes(self) -> list:
        return self.marketplace_scopes.split()


# Global configuration instance
_config: Optional[BridgeConfig] = None


def get_config() -> BridgeConfig:
    """
    Get the global configuration instance.

    Raises:
        ValueError: If configuration validation fails.
    """
    global _config

    if _config is None:
        try:
            _config = BridgeConfig()
        except Exception as e:
            raise ValueError(f"Configuration validation failed: {e}")

    return _config


def reload_config() -> BridgeConfig:
    """Reload configuration from environment variables."""
    global _config
    _config = None
    return get_config()


def validate_configuration() -> Dict[str, Any]:
    """
    Validate current configuration and return status information.

    Returns:
        Dict containing validation results and a secret-free summary.
    """
    try:
        config = get_config()
    except ValueError as e:
        return {
            "valid": False,
            "error": str(e),
            "timestamp": datetime.now().isoformat()
        }

    from marketplace_bridge.security.encryption import CredentialVault

    vault = CredentialVault(config.encryption_key)
    warnings = []
    if not vault.is_configured:
        warnings.append(vault.configuration_problem)
    if not (config.marketplace_app_id and config.marketplace_app_secret):
        warnings.append("No operator-wide app credentials; tenants must supply their own")
    if not config.marketplace_redirect_uri:
        warnings.append("MARKETPLACE_REDIRECT_URI not set; authorization flow unavailable")

    return {
        "valid": vault.is_configured,
        "timestamp": datetime.now().isoformat(),
        "warnings": warnings,
        "summary": {
            "api_base_url": config.marketplace_api_base_url,
            "token_url": config.marketplace_token_url,
            "encryption_configured": vault.is_configured,
            "has_global_app_credentials": bool(
                config.marketplace_app_id and config.marketplace_app_secret
            ),
            "token_expiry_buffer": config.token_expiry_buffer,
            "request_interval": config.request_interval,
            "tenant_switch_interval": config.tenant_switch_interval,
            "database_url": config.database_url.split("@")[-1],
            "listing_cache": bool(config.redis_url),
        },
    }
