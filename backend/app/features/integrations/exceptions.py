"""
Integration lifecycle errors.

Every failure the credential lifecycle can surface derives from
IntegrationError, so route handlers can map the whole family in one place.
"""

from app.shared.repository import StoreError


class IntegrationError(Exception):
    """Base integration error."""
    pass


class UnknownProvider(IntegrationError):
    """Provider id is not supported."""
    pass


class ConfigurationError(IntegrationError):
    """Provider client id/secret are not configured. Not retryable."""
    pass


class CsrfMismatch(IntegrationError):
    """Returned OAuth state does not match the pending authorization."""
    pass


class AuthorizationSessionNotFound(IntegrationError):
    """No pending authorization (expired or never started)."""
    pass


class TokenExchangeFailed(IntegrationError):
    """Provider rejected the authorization code or was unreachable."""
    pass


class ProviderUserIdUnresolved(IntegrationError):
    """Provider user id could not be resolved after all attempts."""
    pass


class WebhookPayloadError(IntegrationError):
    """Inbound webhook payload is malformed or fails its token check."""
    pass


class IntegrationNotFound(IntegrationError):
    """No integration stored for (user, provider)."""
    pass


class TerminalRefreshRejection(IntegrationError):
    """
    Provider rejected the refresh token outright.

    The user must reconnect; auto-refresh stops for this integration.
    """

    requires_reconnect = True
    retryable = False


class TransientRefreshError(IntegrationError):
    """Refresh failed for a reason that may clear up (network, 5xx, 429)."""

    requires_reconnect = False
    retryable = True


__all__ = [
    "IntegrationError",
    "UnknownProvider",
    "ConfigurationError",
    "CsrfMismatch",
    "AuthorizationSessionNotFound",
    "TokenExchangeFailed",
    "ProviderUserIdUnresolved",
    "IntegrationNotFound",
    "WebhookPayloadError",
    "TerminalRefreshRejection",
    "TransientRefreshError",
    "StoreError",
]
