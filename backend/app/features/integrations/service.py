"""
Integration service.

Single entry point for the credential lifecycle, used by the API routes:
authorization, status, refresh, repair, disconnect, webhooks, maintenance.
"""

import logging
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from .authorization import AuthorizationService, ExchangeResult, resolve_provider_user_id
from .exceptions import IntegrationNotFound
from .health import HealthReport, evaluate
from .maintenance import MaintenanceSweeper, SweepResult
from .models import WebhookEvent
from .oauth import ProviderOAuth
from .providers import PROVIDERS, get_provider
from .refresh import TokenRefreshEngine
from .repository import IntegrationRepository
from .revocation import ProviderRevocation, RevocationHandler, RevocationReport
from .webhooks import WebhookCorrelator

logger = logging.getLogger(__name__)


def list_providers() -> list[dict]:
    """Every supported provider and whether it is configured. Never raises."""
    return [
        {
            "provider": spec.provider.value,
            "display_name": spec.display_name,
            "configured": settings.provider_credentials(spec.provider.value) is not None,
            "supports_revoke": spec.supports_revoke,
            "supports_refresh_expiry": spec.supports_refresh_expiry,
        }
        for spec in PROVIDERS.values()
    ]


class IntegrationService:
    """
    Service for third-party integrations.

    Usage:
        service = IntegrationService(db)
        url = await service.start_authorization(user_id, "strava")
        result = await service.exchange_code(user_id, "strava", code, state)
        report = await service.get_connection_status(user_id, "strava")
    """

    def __init__(
        self,
        db: AsyncSession,
        oauth_factory: Callable[[str], ProviderOAuth] = ProviderOAuth.for_provider,
    ):
        self.db = db
        self.oauth_factory = oauth_factory
        self.repo = IntegrationRepository(db)
        self.authorization = AuthorizationService(db, oauth_factory)
        self.refresh_engine = TokenRefreshEngine(db, oauth_factory)
        self.revocation = RevocationHandler(db, oauth_factory)
        self.webhooks = WebhookCorrelator(db)

    # =========================================================================
    # Authorization
    # =========================================================================

    async def start_authorization(self, user_id: str, provider: str) -> str:
        return await self.authorization.start(user_id, provider)

    async def exchange_code(
        self,
        user_id: str,
        provider: str,
        code: str,
        state: Optional[str]
    ) -> ExchangeResult:
        return await self.authorization.exchange(user_id, provider, code, state)

    # =========================================================================
    # Status
    # =========================================================================

    async def get_connection_status(self, user_id: str, provider: str) -> HealthReport:
        spec = get_provider(provider)
        integration = await self.repo.get_for(user_id, spec.provider.value)
        return evaluate(spec.provider.value, integration)

    async def list_connections(self, user_id: str) -> list[HealthReport]:
        """Health report for every provider, connected or not."""
        stored = {i.provider: i for i in await self.repo.list_for_user(user_id)}
        return [
            evaluate(spec.provider.value, stored.get(spec.provider.value))
            for spec in PROVIDERS.values()
        ]

    # =========================================================================
    # Tokens
    # =========================================================================

    async def refresh_now(self, user_id: str, provider: str) -> HealthReport:
        """On-demand refresh, outside the maintenance schedule."""
        integration = await self.refresh_engine.refresh(user_id, provider)
        return evaluate(integration.provider, integration)

    async def get_valid_access_token(self, user_id: str, provider: str) -> str:
        return await self.refresh_engine.get_valid_access_token(user_id, provider)

    async def repair_connection(self, user_id: str, provider: str) -> HealthReport:
        """
        Refresh the token, then re-resolve the provider user id.

        The refreshed token is kept even if the id lookup fails.

        Raises:
            IntegrationNotFound: Not connected
            TerminalRefreshRejection: Refresh rejected; reconnect required
            TransientRefreshError: Refresh failed for now
            ProviderUserIdUnresolved: Id lookup failed after all attempts
        """
        spec = get_provider(provider)
        integration = await self.refresh_engine.refresh(user_id, spec.provider.value)

        oauth = self.oauth_factory(spec.provider.value)
        provider_user_id = await resolve_provider_user_id(oauth, integration.access_token)

        await self.repo.update_for(user_id, spec.provider.value, provider_user_id=provider_user_id)
        await self.repo.commit()

        logger.info(
            f"Connection repaired: user={user_id} provider={provider} "
            f"provider_user_id={provider_user_id}"
        )
        return await self.get_connection_status(user_id, spec.provider.value)

    # =========================================================================
    # Disconnect
    # =========================================================================

    async def disconnect(self, user_id: str, provider: str) -> ProviderRevocation:
        """
        Disconnect one provider.

        Raises:
            IntegrationNotFound: Not connected
        """
        outcome = await self.revocation.revoke(user_id, provider)
        if outcome.remote == "not_connected":
            raise IntegrationNotFound(f"{provider} is not connected")
        return outcome

    async def disconnect_all(self, user_id: str) -> RevocationReport:
        return await self.revocation.revoke_all(user_id)

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def ingest_webhook(self, provider: str, payload: Any) -> list[WebhookEvent]:
        return await self.webhooks.ingest_payload(provider, payload)

    async def mark_webhook_processed(
        self,
        event_id: int,
        error: Optional[str] = None
    ) -> Optional[WebhookEvent]:
        return await self.webhooks.mark_processed(event_id, error)

    async def get_webhook_status(self, user_id: str, provider: str) -> dict:
        return await self.webhooks.status_for(user_id, provider)

    async def get_webhook_counts(self, provider: Optional[str] = None) -> dict:
        return await self.webhooks.counts(provider)


async def run_maintenance_sweep(
    db_factory,
    oauth_factory: Callable[[str], ProviderOAuth] = ProviderOAuth.for_provider,
) -> SweepResult:
    """Run one maintenance sweep outside the background schedule."""
    return await MaintenanceSweeper(db_factory, oauth_factory=oauth_factory).run()
