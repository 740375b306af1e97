"""
Third-party integrations module.

Usage:
    from app.features.integrations import IntegrationService
    from app.features.integrations import MaintenanceRunner

Components:
- providers: Capability table (Strava, Garmin, Wahoo, Google Calendar)
- AuthorizationService: PKCE start and code exchange
- TokenRefreshEngine: Token refresh with terminal/transient classification
- MaintenanceSweeper / MaintenanceRunner: Proactive refresh sweep
- health: Connection diagnosis
- WebhookCorrelator: Inbound event log
- RevocationHandler: Disconnect and account teardown

Models:
- Integration: OAuth credentials per (user, provider)
- PendingAuthorization: In-flight PKCE flow
- WebhookEvent: Webhook event log
"""

from .models import Integration, PendingAuthorization, WebhookEvent
from .providers import Provider, ProviderSpec, PROVIDERS, get_provider
from .exceptions import (
    IntegrationError,
    UnknownProvider,
    ConfigurationError,
    CsrfMismatch,
    AuthorizationSessionNotFound,
    TokenExchangeFailed,
    ProviderUserIdUnresolved,
    WebhookPayloadError,
    IntegrationNotFound,
    TerminalRefreshRejection,
    TransientRefreshError,
    StoreError,
)
from .oauth import ProviderOAuth, TokenSet, parse_token_response
from .authorization import AuthorizationService, ExchangeResult
from .refresh import TokenRefreshEngine
from .health import HealthStatus, HealthReport, evaluate
from .maintenance import MaintenanceRunner, MaintenanceSweeper, SweepResult
from .webhooks import WebhookCorrelator, verify_strava_subscription
from .revocation import RevocationHandler, RevocationReport, ProviderRevocation
from .service import IntegrationService, list_providers, run_maintenance_sweep

__all__ = [
    # Models
    "Integration",
    "PendingAuthorization",
    "WebhookEvent",
    # Providers
    "Provider",
    "ProviderSpec",
    "PROVIDERS",
    "get_provider",
    # Errors
    "IntegrationError",
    "UnknownProvider",
    "ConfigurationError",
    "CsrfMismatch",
    "AuthorizationSessionNotFound",
    "TokenExchangeFailed",
    "ProviderUserIdUnresolved",
    "WebhookPayloadError",
    "IntegrationNotFound",
    "TerminalRefreshRejection",
    "TransientRefreshError",
    "StoreError",
    # OAuth
    "ProviderOAuth",
    "TokenSet",
    "parse_token_response",
    # Lifecycle
    "AuthorizationService",
    "ExchangeResult",
    "TokenRefreshEngine",
    "HealthStatus",
    "HealthReport",
    "evaluate",
    "MaintenanceRunner",
    "MaintenanceSweeper",
    "SweepResult",
    "WebhookCorrelator",
    "verify_strava_subscription",
    "RevocationHandler",
    "RevocationReport",
    "ProviderRevocation",
    # Service
    "IntegrationService",
    "list_providers",
    "run_maintenance_sweep",
]
