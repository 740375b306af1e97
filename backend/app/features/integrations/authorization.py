"""
Authorization flow: PKCE start and code exchange.

start():    create PendingAuthorization, return provider authorize URL
exchange(): validate state, exchange code, resolve provider user id
            (bounded retry), upsert Integration
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.shared.clock import utcnow
from . import pkce
from .exceptions import (
    AuthorizationSessionNotFound,
    CsrfMismatch,
    ProviderUserIdUnresolved,
)
from .oauth import ProviderOAuth, parse_token_response
from .providers import get_provider
from .repository import IntegrationRepository, PendingAuthorizationRepository

logger = logging.getLogger(__name__)

OAuthFactory = Callable[[str], ProviderOAuth]


@dataclass
class ExchangeResult:
    success: bool
    provider: str
    provider_user_id: str


async def resolve_provider_user_id(
    oauth: ProviderOAuth,
    access_token: str,
    token_data: Optional[dict] = None,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> str:
    """
    Resolve the provider's own user id, with bounded exponential backoff.

    If the token response already names the account (Strava's athlete),
    no call is made. Otherwise the identity endpoint is tried up to
    ``attempts`` times, waiting base_delay * 2^(n-1) after failure n.

    Args:
        oauth: Provider client
        access_token: Fresh access token
        token_data: Token endpoint response
        attempts: Max attempts (default: settings)
        base_delay: First backoff in seconds (default: settings)

    Returns:
        Provider user id

    Raises:
        ProviderUserIdUnresolved: Every attempt failed
    """
    spec = oauth.spec
    if token_data and spec.user_id_from_token:
        user_id = spec.user_id_from_token(token_data)
        if user_id:
            return user_id

    attempts = attempts if attempts is not None else settings.provider_user_id_retry_attempts
    base_delay = base_delay if base_delay is not None else settings.provider_user_id_retry_base_delay

    for attempt in range(1, attempts + 1):
        try:
            user_id = await oauth.fetch_provider_user_id(access_token)
            if user_id:
                if attempt > 1:
                    logger.info(f"{spec.display_name} user id resolved on attempt {attempt}")
                return user_id
            logger.warning(
                f"{spec.display_name} user id attempt {attempt}/{attempts}: "
                f"response has no user id"
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"{spec.display_name} user id attempt {attempt}/{attempts} failed: {e}")

        if attempt < attempts:
            await asyncio.sleep(base_delay * 2 ** (attempt - 1))

    logger.error(f"{spec.display_name} user id unresolved after {attempts} attempts")
    raise ProviderUserIdUnresolved(
        f"Could not resolve {spec.display_name} user id after {attempts} attempts"
    )


def _provider_user_data(token_data: dict) -> dict:
    """Non-secret metadata worth keeping from the token response."""
    data = {"connected_at": utcnow().isoformat()}
    if token_data.get("scope"):
        data["scope"] = token_data["scope"]
    athlete = token_data.get("athlete")
    if isinstance(athlete, dict):
        name = " ".join(p for p in (athlete.get("firstname"), athlete.get("lastname")) if p)
        if name:
            data["display_name"] = name
    return data


class AuthorizationService:
    """
    Starts PKCE flows and completes code exchanges.

    Usage:
        auth = AuthorizationService(db)
        url = await auth.start(user_id, "garmin")
        result = await auth.exchange(user_id, "garmin", code, state)
    """

    def __init__(self, db: AsyncSession, oauth_factory: OAuthFactory = ProviderOAuth.for_provider):
        self.db = db
        self.oauth_factory = oauth_factory
        self.integrations = IntegrationRepository(db)
        self.pending = PendingAuthorizationRepository(db)

    async def start(self, user_id: str, provider: str) -> str:
        """
        Start an authorization flow.

        Overwrites any pending flow for this user, whatever its provider.

        Returns:
            Provider authorization URL

        Raises:
            ConfigurationError: Provider credentials missing
            StoreError: Pending flow could not be saved
        """
        oauth = self.oauth_factory(provider)

        verifier = pkce.generate_code_verifier()
        state = pkce.generate_state()

        await self.pending.save(
            user_id=user_id,
            provider=oauth.spec.provider.value,
            state=state,
            code_verifier=verifier,
        )
        await self.pending.commit()

        logger.info(f"Authorization started: user={user_id} provider={provider}")
        return oauth.get_authorization_url(state, pkce.code_challenge(verifier))

    async def exchange(
        self,
        user_id: str,
        provider: str,
        code: str,
        state: Optional[str]
    ) -> ExchangeResult:
        """
        Complete an authorization flow.

        A state mismatch aborts before any provider call and keeps the
        pending flow. Once the code is sent to the provider the pending
        flow is consumed, whatever happens next.

        Raises:
            ConfigurationError: Provider credentials missing
            AuthorizationSessionNotFound: No live pending flow for this provider
            CsrfMismatch: State does not match
            TokenExchangeFailed: Provider rejected the code
            ProviderUserIdUnresolved: Identity lookup failed (nothing stored)
            StoreError: Persistence failed
        """
        spec = get_provider(provider)
        oauth = self.oauth_factory(spec.provider.value)

        pending = await self.pending.get_for_user(user_id)
        if pending is None:
            raise AuthorizationSessionNotFound("No pending authorization; start again")

        ttl = timedelta(minutes=settings.pending_authorization_ttl_minutes)
        if pending.created_at + ttl < utcnow():
            await self.pending.delete_for_user(user_id)
            await self.pending.commit()
            raise AuthorizationSessionNotFound("Authorization session expired; start again")

        if pending.provider != spec.provider.value:
            raise AuthorizationSessionNotFound(
                f"No pending {spec.display_name} authorization; start again"
            )

        if not state or not secrets.compare_digest(state, pending.state):
            logger.warning(
                f"CSRF state mismatch for user={user_id} provider={provider} "
                f"(possible attack)"
            )
            raise CsrfMismatch("State parameter does not match")

        code_verifier = pending.code_verifier

        # Codes are single-use at the provider
        await self.pending.delete_for_user(user_id)
        await self.pending.commit()

        token_data = await oauth.exchange_code(code, code_verifier)
        tokens = parse_token_response(spec, token_data)

        provider_user_id = await resolve_provider_user_id(
            oauth, tokens.access_token, token_data
        )

        await self.integrations.upsert_integration(
            user_id,
            spec.provider.value,
            provider_user_id=provider_user_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            access_token_expires_at=tokens.access_token_expires_at,
            refresh_token_expires_at=tokens.refresh_token_expires_at,
            provider_user_data=_provider_user_data(token_data),
            sync_enabled=True,
        )
        await self.integrations.commit()

        logger.info(
            f"Integration connected: user={user_id} provider={provider} "
            f"provider_user_id={provider_user_id}"
        )
        return ExchangeResult(
            success=True,
            provider=spec.provider.value,
            provider_user_id=provider_user_id,
        )
