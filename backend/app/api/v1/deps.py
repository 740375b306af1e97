"""
Shared route dependencies.

- Rate limiting (limiter lives on app.state)
- OAuth client factory (overridable on app.state)
- Internal API key check
- Integration error -> HTTPException mapping
"""

import hmac
import logging
from typing import Callable

from fastapi import Depends, Header, HTTPException, Request

from app.config import settings
from app.features.integrations import (
    AuthorizationSessionNotFound,
    ConfigurationError,
    CsrfMismatch,
    IntegrationError,
    IntegrationNotFound,
    ProviderOAuth,
    ProviderUserIdUnresolved,
    StoreError,
    TerminalRefreshRejection,
    TokenExchangeFailed,
    TransientRefreshError,
    UnknownProvider,
    WebhookPayloadError,
)
from app.shared.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


# =============================================================================
# App state
# =============================================================================

def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_oauth_factory(request: Request) -> Callable[[str], ProviderOAuth]:
    return getattr(request.app.state, "oauth_factory", ProviderOAuth.for_provider)


def get_db_factory(request: Request):
    return request.app.state.db_factory


def get_maintenance_runner(request: Request):
    return request.app.state.maintenance_runner


# =============================================================================
# Rate limiting
# =============================================================================

def rate_limit(scope: str, limit_setting: str, window_setting: str):
    """
    Build a dependency admitting at most N requests per window.

    The key is scope + user_id path parameter when present, else the
    client address.

    Args:
        scope: Limit bucket name ("auth", "webhook")
        limit_setting: Settings attribute holding the request limit
        window_setting: Settings attribute holding the window in minutes
    """
    async def dependency(
        request: Request,
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> None:
        if not settings.rate_limit_enabled:
            return

        subject = request.path_params.get("user_id")
        if not subject:
            subject = request.client.host if request.client else "unknown"
        key = f"{scope}:{subject}"

        result = await limiter.check(
            key,
            getattr(settings, limit_setting),
            getattr(settings, window_setting),
        )
        if not result.allowed:
            raise HTTPException(
                status_code=429,
                detail="Too many requests",
                headers={
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": result.reset_at.isoformat(),
                },
            )

    return dependency


auth_rate_limit = rate_limit(
    "auth", "auth_rate_limit_requests", "auth_rate_limit_window_minutes"
)
webhook_rate_limit = rate_limit(
    "webhook", "webhook_rate_limit_requests", "webhook_rate_limit_window_minutes"
)


# =============================================================================
# Internal API key
# =============================================================================

async def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify internal API key."""
    if not settings.internal_api_key:
        raise HTTPException(status_code=503, detail="Internal API not configured")
    if not hmac.compare_digest(x_api_key, settings.internal_api_key):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# =============================================================================
# Error mapping
# =============================================================================

def to_http_exception(error: Exception) -> HTTPException:
    """Translate a lifecycle error into the HTTP response for it."""
    if isinstance(error, (UnknownProvider, IntegrationNotFound)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConfigurationError):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, (CsrfMismatch, WebhookPayloadError)):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, AuthorizationSessionNotFound):
        return HTTPException(status_code=410, detail=str(error))
    if isinstance(error, (ProviderUserIdUnresolved, TokenExchangeFailed)):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, TerminalRefreshRejection):
        return HTTPException(
            status_code=409,
            detail={"message": str(error), "requires_reconnect": True},
        )
    if isinstance(error, TransientRefreshError):
        return HTTPException(
            status_code=503,
            detail={"message": str(error), "retryable": True},
        )
    if isinstance(error, StoreError):
        logger.error(f"Store error: {error}")
        return HTTPException(status_code=500, detail="Failed to save data")
    if isinstance(error, IntegrationError):
        return HTTPException(status_code=400, detail=str(error))
    raise error
