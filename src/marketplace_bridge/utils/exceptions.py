"""
Custom exceptions for Marketplace Bridge.

Every error carries a machine-readable ``code`` and a suggested remediation
``action`` so callers (UI, schedulers) can react without parsing messages.
``retryable`` marks transient failures that a caller may retry later.
"""

from typing import Optional, Dict, Any, Iterable


class Action:
    """Remediation actions surfaced alongside error codes."""

    CONFIGURE_SERVER = "CONFIGURE_SERVER"
    CONFIGURE_CREDENTIALS = "CONFIGURE_CREDENTIALS"
    AUTHORIZE = "AUTHORIZE"
    RECONNECT = "RECONNECT"
    DISCONNECT_AND_RECONNECT = "DISCONNECT_AND_RECONNECT"
    RETRY_LATER = "RETRY_LATER"
    CONTACT_SUPPORT = "CONTACT_SUPPORT"


class MarketplaceBridgeError(Exception):
    """Base exception for all Marketplace Bridge errors."""

    code: str = "UNKNOWN_ERROR"
    action: str = Action.CONTACT_SUPPORT
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception with message and optional details.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Structured form used for connection issues and API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "action": self.action,
        }


class ConfigurationError(MarketplaceBridgeError):
    """Raised when process configuration is invalid or missing."""

    code = "CONFIGURATION_ERROR"
    action = Action.CONFIGURE_SERVER


class EncryptionKeyError(ConfigurationError):
    """Raised by every vault operation when the encryption key is unusable."""


class CredentialError(MarketplaceBridgeError):
    """Base class for problems with stored tenant credentials."""

    def __init__(self, message: str, tenant_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if tenant_id:
            details["tenant_id"] = tenant_id
        super().__init__(message, details)
        self.tenant_id = tenant_id


class CredentialsNotConfigured(CredentialError):
    """No application credentials are available at any tier."""

    code = "CREDENTIALS_NOT_CONFIGURED"
    action = Action.CONFIGURE_CREDENTIALS


class NotConnected(CredentialError):
    """The tenant never completed authorization (no refresh token on file)."""

    code = "NOT_CONNECTED"
    action = Action.AUTHORIZE


class MigrationRequired(CredentialError):
    """A stored secret carries the legacy migration sentinel."""

    code = "NEEDS_MIGRATION"
    action = Action.DISCONNECT_AND_RECONNECT


class MalformedCiphertext(CredentialError):
    """A stored secret is not valid ``ivHex:ciphertextHex`` or fails to decrypt."""

    code = "INVALID_ENCRYPTION_FORMAT"
    action = Action.DISCONNECT_AND_RECONNECT


class InvalidAuthorizationState(CredentialError):
    """OAuth callback state is unknown, expired or belongs to another tenant."""

    code = "INVALID_OAUTH_STATE"
    action = Action.AUTHORIZE


class APIError(MarketplaceBridgeError):
    """Base class for marketplace API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 endpoint: Optional[str] = None,
                 response_data: Optional[Any] = None):
        """
        Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            endpoint: API endpoint that failed
            response_data: API response data
        """
        details: Dict[str, Any] = {}
        if status_code:
            details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        if response_data:
            details["response_data"] = response_data

        super().__init__(message, details)
        self.status_code = status_code
        self.endpoint = endpoint
        self.response_data = response_data


class MarketplaceAPIError(APIError):
    """Non-retryable marketplace response that is neither auth nor transient."""

    code = "MARKETPLACE_API_ERROR"
    action = Action.RETRY_LATER


class MarketplaceAuthFailed(APIError):
    """The marketplace rejected the tenant's credentials or token."""

    code = "MARKETPLACE_AUTH_FAILED"
    action = Action.RECONNECT


class MarketplaceUnavailable(APIError):
    """Transient marketplace outage (HTTP 5xx or network failure)."""

    code = "MARKETPLACE_UNAVAILABLE"
    action = Action.RETRY_LATER
    retryable = True


class RateLimited(APIError):
    """Raised when marketplace rate limits are exceeded (HTTP 429)."""

    code = "RATE_LIMITED"
    action = Action.RETRY_LATER
    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 endpoint: Optional[str] = None):
        """
        Initialize rate limit error.

        Args:
            message: Error message
            retry_after: Seconds to wait before retry
            endpoint: API endpoint that was rate limited
        """
        super().__init__(message, status_code=429, endpoint=endpoint)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class PartialAggregationFailure(MarketplaceBridgeError):
    """
    One offer or statistics fetch failed during aggregation.

    Never raised out of an aggregation; instances are converted to
    ``PartialFailure`` entries attached to the successful result.
    """

    code = "PARTIAL_AGGREGATION_FAILURE"
    action = Action.RETRY_LATER


def _describe_error(response_data: Any) -> Optional[str]:
    """Pull a human-readable message out of an OAuth or REST error body."""
    if not isinstance(response_data, dict):
        return None
    if response_data.get("error_description") or response_data.get("error"):
        return response_data.get("error_description") or response_data.get("error")
    errors = response_data.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0].get("longMessage") or errors[0].get("message")
    return None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def handle_api_error(response, endpoint: Optional[str] = None,
                     auth_failure_statuses: Iterable[int] = (401, 403)) -> None:
    """
    Handle HTTP response and raise appropriate API error.

    Args:
        response: HTTP response object
        endpoint: API endpoint that was called
        auth_failure_statuses: Status codes meaning the credentials were rejected

    Raises:
        Appropriate APIError subclass based on response status.
    """
    status_code = response.status_code

    try:
        response_data = response.json()
    except ValueError:
        response_data = response.text[:500] if response.text else None

    description = _describe_error(response_data) or f"HTTP {status_code}"

    if status_code in auth_failure_statuses:
        raise MarketplaceAuthFailed(
            f"Marketplace rejected credentials: {description}",
            status_code=status_code,
            endpoint=endpoint,
            response_data=response_data,
        )
    elif status_code == 429:
        raise RateLimited(
            "Marketplace rate limit exceeded",
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            endpoint=endpoint,
        )
    elif status_code >= 500:
        raise MarketplaceUnavailable(
            f"Marketplace server error ({status_code}): {description}",
            status_code=status_code,
            endpoint=endpoint,
            response_data=response_data,
        )
    else:
        raise MarketplaceAPIError(
            f"Marketplace request failed ({status_code}): {description}",
            status_code=status_code,
            endpoint=endpoint,
            response_data=response_data,
        )
