"""
Revocation handler.

Best-effort provider-side revoke followed by unconditional local
deletion. Remote failures are reported, never raised: account deletion
must not depend on a third party's availability.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.clock import utcnow
from .models import Integration
from .oauth import ProviderOAuth
from .providers import get_provider
from .refresh import ACCESS_TOKEN_BUFFER
from .repository import IntegrationRepository

logger = logging.getLogger(__name__)


@dataclass
class ProviderRevocation:
    """
    Outcome for one provider.

    remote: "revoked" | "failed" | "local_delete" | "not_connected"
    """

    provider: str
    remote: str
    deleted: bool = False
    error: Optional[str] = None


@dataclass
class RevocationReport:
    user_id: str
    results: list[ProviderRevocation] = field(default_factory=list)

    @property
    def all_deleted(self) -> bool:
        return all(r.deleted for r in self.results)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "all_deleted": self.all_deleted,
            "results": [asdict(r) for r in self.results],
        }


class RevocationHandler:
    """
    Disconnects integrations.

    Usage:
        handler = RevocationHandler(db)
        outcome = await handler.revoke(user_id, "strava")
        report = await handler.revoke_all(user_id)
    """

    def __init__(
        self,
        db: AsyncSession,
        oauth_factory: Callable[[str], ProviderOAuth] = ProviderOAuth.for_provider,
    ):
        self.db = db
        self.oauth_factory = oauth_factory
        self.repo = IntegrationRepository(db)

    async def revoke(self, user_id: str, provider: str) -> ProviderRevocation:
        """
        Revoke at the provider if possible, then delete the local row.

        Raises:
            StoreError: Local deletion failed
        """
        spec = get_provider(provider)
        provider = spec.provider.value

        integration = await self.repo.get_for(user_id, provider)
        if integration is None:
            return ProviderRevocation(provider=provider, remote="not_connected")

        outcome = ProviderRevocation(provider=provider, remote="local_delete")
        if spec.supports_revoke:
            try:
                revoked = await self._revoke_remote(integration)
                outcome.remote = "revoked" if revoked else "failed"
                if not revoked:
                    outcome.error = f"{spec.display_name} did not confirm revocation"
            except Exception as e:
                outcome.remote = "failed"
                outcome.error = str(e)

        if outcome.remote == "failed":
            logger.warning(
                f"Remote revocation failed for user={user_id} provider={provider}: {outcome.error}"
            )

        await self.repo.delete_for(user_id, provider)
        await self.repo.commit()
        outcome.deleted = True

        logger.info(f"Revocation: user={user_id} provider={provider} remote={outcome.remote}")
        return outcome

    async def _revoke_remote(self, integration: Integration) -> bool:
        """Revoke with a live token, refreshing in memory first if needed."""
        oauth = self.oauth_factory(integration.provider)
        access_token = integration.access_token

        expired = integration.access_token_expires_at - ACCESS_TOKEN_BUFFER <= utcnow()
        if expired and integration.refresh_token and not integration.refresh_token_invalid:
            data = await oauth.refresh(integration.refresh_token)
            access_token = data.get("access_token") or access_token

        return await oauth.revoke(access_token)

    async def revoke_all(self, user_id: str) -> RevocationReport:
        """
        Revoke every integration the user has.

        Each provider is handled independently and the report is never
        raised, even if every provider fails.
        """
        report = RevocationReport(user_id=user_id)

        providers = [i.provider for i in await self.repo.list_for_user(user_id)]
        for provider in providers:
            try:
                report.results.append(await self.revoke(user_id, provider))
            except Exception as e:
                logger.error(f"Revocation failed for user={user_id} provider={provider}: {e}")
                report.results.append(ProviderRevocation(
                    provider=provider,
                    remote="failed",
                    deleted=False,
                    error=str(e),
                ))

        return report
