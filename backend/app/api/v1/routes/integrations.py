"""
Integration Routes

Endpoints for third-party integrations:
- /integrations/providers - Supported providers
- /users/{user_id}/integrations - All connection statuses
- /users/{user_id}/integrations/{provider}/authorize - Start OAuth flow
- /users/{user_id}/integrations/{provider}/exchange - Complete OAuth flow
- /users/{user_id}/integrations/{provider}/status - Connection health
- /users/{user_id}/integrations/{provider}/refresh - Refresh token now
- /users/{user_id}/integrations/{provider}/repair - Refresh + re-resolve id
- /users/{user_id}/integrations/{provider}/webhooks - Webhook diagnostics
- DELETE /users/{user_id}/integrations/{provider} - Disconnect
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import auth_rate_limit, get_oauth_factory, to_http_exception
from app.db.session import get_async_db
from app.features.integrations import (
    ConfigurationError,
    IntegrationError,
    IntegrationService,
    StoreError,
    list_providers,
)
from app.features.integrations.schemas import (
    AuthorizationResponse,
    ConnectionStatus,
    DisconnectResponse,
    ExchangeRequest,
    ExchangeResponse,
    ProviderInfo,
    WebhookStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_service(
    db: AsyncSession = Depends(get_async_db),
    oauth_factory=Depends(get_oauth_factory),
) -> IntegrationService:
    return IntegrationService(db, oauth_factory=oauth_factory)


# =============================================================================
# Providers & connections
# =============================================================================

@router.get("/integrations/providers", response_model=list[ProviderInfo])
async def get_providers():
    """List supported providers and whether each is configured."""
    return list_providers()


@router.get("/users/{user_id}/integrations", response_model=list[ConnectionStatus])
async def get_connections(
    user_id: str,
    service: IntegrationService = Depends(get_service),
):
    """Health of every provider connection for a user."""
    reports = await service.list_connections(user_id)
    return [ConnectionStatus.from_report(r) for r in reports]


# =============================================================================
# OAuth Flow
# =============================================================================

@router.post(
    "/users/{user_id}/integrations/{provider}/authorize",
    response_model=AuthorizationResponse,
    dependencies=[Depends(auth_rate_limit)],
)
async def start_authorization(
    user_id: str,
    provider: str,
    service: IntegrationService = Depends(get_service),
):
    """
    Start OAuth flow.

    Returns the provider URL to redirect the browser to. An unconfigured
    provider is reported with configured=false rather than an error.
    """
    try:
        url = await service.start_authorization(user_id, provider)
    except ConfigurationError as e:
        logger.warning(f"Authorization skipped, provider not configured: {provider}")
        return AuthorizationResponse(provider=provider, configured=False, message=str(e))
    except (IntegrationError, StoreError) as e:
        raise to_http_exception(e)

    return AuthorizationResponse(provider=provider, configured=True, authorization_url=url)


@router.post(
    "/users/{user_id}/integrations/{provider}/exchange",
    response_model=ExchangeResponse,
    dependencies=[Depends(auth_rate_limit)],
)
async def exchange_code(
    user_id: str,
    provider: str,
    request: ExchangeRequest,
    service: IntegrationService = Depends(get_service),
):
    """Complete OAuth flow with the code and state from the provider redirect."""
    try:
        result = await service.exchange_code(user_id, provider, request.code, request.state)
    except (IntegrationError, StoreError) as e:
        raise to_http_exception(e)

    return ExchangeResponse(
        success=result.success,
        provider=result.provider,
        provider_user_id=result.provider_user_id,
    )


# =============================================================================
# Status & Maintenance
# =============================================================================

@router.get(
    "/users/{user_id}/integrations/{provider}/status",
    response_model=ConnectionStatus,
)
async def get_status(
    user_id: str,
    provider: str,
    service: IntegrationService = Depends(get_service),
):
    """Connection health with one remediation instruction."""
    try:
        report = await service.get_connection_status(user_id, provider)
    except IntegrationError as e:
        raise to_http_exception(e)
    return ConnectionStatus.from_report(report)


@router.post(
    "/users/{user_id}/integrations/{provider}/refresh",
    response_model=ConnectionStatus,
)
async def refresh_now(
    user_id: str,
    provider: str,
    service: IntegrationService = Depends(get_service),
):
    """Refresh the access token now."""
    try:
        report = await service.refresh_now(user_id, provider)
    except (IntegrationError, StoreError) as e:
        raise to_http_exception(e)
    return ConnectionStatus.from_report(report)


@router.post(
    "/users/{user_id}/integrations/{provider}/repair",
    response_model=ConnectionStatus,
)
async def repair_connection(
    user_id: str,
    provider: str,
    service: IntegrationService = Depends(get_service),
):
    """Refresh the token and re-resolve the provider user id."""
    try:
        report = await service.repair_connection(user_id, provider)
    except (IntegrationError, StoreError) as e:
        raise to_http_exception(e)
    return ConnectionStatus.from_report(report)


@router.delete(
    "/users/{user_id}/integrations/{provider}",
    response_model=DisconnectResponse,
)
async def disconnect(
    user_id: str,
    provider: str,
    service: IntegrationService = Depends(get_service),
):
    """
    Disconnect a provider.

    The local connection is removed even if the provider-side revoke fails.
    """
    try:
        outcome = await service.disconnect(user_id, provider)
    except (IntegrationError, StoreError) as e:
        raise to_http_exception(e)

    return DisconnectResponse(
        provider=outcome.provider,
        remote=outcome.remote,
        deleted=outcome.deleted,
        error=outcome.error,
    )


@router.get(
    "/users/{user_id}/integrations/{provider}/webhooks",
    response_model=WebhookStatusResponse,
)
async def webhook_status(
    user_id: str,
    provider: str,
    service: IntegrationService = Depends(get_service),
):
    """Webhook diagnostics for this connection."""
    try:
        return await service.get_webhook_status(user_id, provider)
    except IntegrationError as e:
        raise to_http_exception(e)
