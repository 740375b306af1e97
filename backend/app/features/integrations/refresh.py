"""
Token refresh engine.

One generic engine for every provider. Outcomes:
- success: new tokens written, refresh_token_invalid cleared
- terminal rejection: refresh_token_invalid set, TerminalRefreshRejection raised
- transient failure: nothing written, TransientRefreshError raised
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.clock import utcnow
from .exceptions import (
    IntegrationNotFound,
    TerminalRefreshRejection,
    TokenExchangeFailed,
    TransientRefreshError,
)
from .models import Integration
from .oauth import ProviderOAuth, parse_token_response
from .providers import get_provider
from .repository import IntegrationRepository

logger = logging.getLogger(__name__)

# Tokens expiring sooner than this are refreshed before use
ACCESS_TOKEN_BUFFER = timedelta(minutes=5)


class TokenRefreshEngine:
    """
    Refreshes the stored access token for one (user, provider).

    State is read fresh from the store on every call; the result is a
    pure function of the stored refresh token. Concurrent refreshes for
    the same pair both write valid tokens and the later write wins.
    """

    def __init__(
        self,
        db: AsyncSession,
        oauth_factory: Callable[[str], ProviderOAuth] = ProviderOAuth.for_provider,
    ):
        self.db = db
        self.oauth_factory = oauth_factory
        self.repo = IntegrationRepository(db)

    async def refresh(self, user_id: str, provider: str) -> Integration:
        """
        Refresh tokens now.

        Returns:
            The updated integration

        Raises:
            IntegrationNotFound: Not connected (or disconnected meanwhile)
            TerminalRefreshRejection: Reconnect required
            TransientRefreshError: Try again later
            ConfigurationError: Provider credentials missing
            StoreError: Persistence failed
        """
        spec = get_provider(provider)

        integration = await self.repo.get_for(user_id, spec.provider.value)
        if integration is None:
            raise IntegrationNotFound(f"No {spec.display_name} integration for user {user_id}")

        if integration.refresh_token_invalid:
            raise TerminalRefreshRejection(
                f"{spec.display_name} refresh token was rejected earlier; reconnect required"
            )
        if not integration.refresh_token:
            raise TerminalRefreshRejection(f"No {spec.display_name} refresh token stored")

        sent_token = integration.refresh_token
        read_at = integration.updated_at

        oauth = self.oauth_factory(spec.provider.value)
        try:
            data = await oauth.refresh(sent_token)
        except TerminalRefreshRejection as e:
            newer = await self._record_rejection(user_id, spec.provider.value, sent_token, read_at)
            if newer is not None:
                return newer
            logger.error(f"Refresh rejected for user={user_id} provider={provider}: {e}")
            raise
        except TransientRefreshError as e:
            logger.warning(f"Transient refresh failure for user={user_id} provider={provider}: {e}")
            raise

        try:
            tokens = parse_token_response(
                spec,
                data,
                previous_refresh_token=sent_token,
                previous_refresh_expires_at=integration.refresh_token_expires_at,
            )
        except (TokenExchangeFailed, TypeError, ValueError) as e:
            raise TransientRefreshError(f"Malformed {spec.display_name} refresh response: {e}") from e

        updated = await self.repo.update_for(
            user_id,
            spec.provider.value,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            access_token_expires_at=tokens.access_token_expires_at,
            refresh_token_expires_at=tokens.refresh_token_expires_at,
            refresh_token_invalid=False,
        )
        await self.repo.commit()

        if not updated:
            raise IntegrationNotFound(
                f"{spec.display_name} integration for user {user_id} was removed during refresh"
            )

        logger.info(
            f"Token refreshed: user={user_id} provider={provider} "
            f"expires_at={tokens.access_token_expires_at.isoformat()}"
        )
        return await self.repo.get_for(user_id, spec.provider.value)

    async def _record_rejection(
        self,
        user_id: str,
        provider: str,
        sent_token: str,
        read_at: datetime
    ) -> Optional[Integration]:
        """
        Flag the integration after a terminal rejection of ``sent_token``.

        The flag is only written if the row still holds the rejected token.
        When a concurrent refresh (or a reconnect) replaced it while the
        provider call was in flight, nothing is flagged and the newer row
        is returned instead.

        Raises:
            IntegrationNotFound: Disconnected while the call was in flight
        """
        flagged = await self.repo.mark_refresh_invalid(user_id, provider, unchanged_since=read_at)
        await self.repo.commit()
        if flagged:
            return None

        current = await self.repo.get_for(user_id, provider)
        if current is None:
            raise IntegrationNotFound(
                f"{provider} integration for user {user_id} was removed during refresh"
            )
        if current.refresh_token != sent_token and not current.refresh_token_invalid:
            logger.info(
                f"Stale refresh rejection ignored for user={user_id} provider={provider}: "
                f"token was replaced concurrently"
            )
            return current

        # Row rewritten but still holding the rejected token
        await self.repo.mark_refresh_invalid(user_id, provider, unchanged_since=current.updated_at)
        await self.repo.commit()
        return None

    async def get_valid_access_token(self, user_id: str, provider: str) -> str:
        """
        Get an access token that is good for at least a few more minutes.

        Refreshes first when the stored token expires within 5 minutes.

        Raises:
            IntegrationNotFound, TerminalRefreshRejection, TransientRefreshError
        """
        spec = get_provider(provider)
        integration = await self.repo.get_for(user_id, spec.provider.value)
        if integration is None:
            raise IntegrationNotFound(f"No {spec.display_name} integration for user {user_id}")

        if integration.access_token_expires_at - ACCESS_TOKEN_BUFFER > utcnow():
            return integration.access_token

        integration = await self.refresh(user_id, spec.provider.value)
        return integration.access_token
