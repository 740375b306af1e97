"""
Generic provider OAuth client.

Handles, for every provider in the capability table:
- Authorization URL generation (with PKCE challenge where supported)
- Code exchange for tokens
- Token refresh, with terminal/transient failure classification
- Provider user id lookup
- Token revocation (where the provider has an endpoint)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from app.config import ProviderCredentials, settings
from app.shared.clock import from_timestamp, utcnow
from .exceptions import (
    ConfigurationError,
    TerminalRefreshRejection,
    TokenExchangeFailed,
    TransientRefreshError,
)
from .providers import ProviderSpec, get_provider

logger = logging.getLogger(__name__)


# Lowercased fragments of a refresh error body that mean the grant is dead.
# Strava reports a bad refresh token as an error on resource "RefreshToken".
TERMINAL_SIGNATURES = ("invalid_grant", "revoked", "refreshtoken")


# =============================================================================
# Token parsing
# =============================================================================

@dataclass
class TokenSet:
    """Tokens and expiries parsed from a token endpoint response."""

    access_token: str
    refresh_token: Optional[str]
    access_token_expires_at: datetime
    refresh_token_expires_at: Optional[datetime]
    raw: dict = field(default_factory=dict, repr=False)


def parse_token_response(
    spec: ProviderSpec,
    data: dict,
    now: Optional[datetime] = None,
    previous_refresh_token: Optional[str] = None,
    previous_refresh_expires_at: Optional[datetime] = None,
) -> TokenSet:
    """
    Turn a token endpoint response into a TokenSet.

    Access expiry comes from ``expires_in``, else the absolute
    ``expires_at`` epoch (Strava), else the provider default. When the
    provider does not rotate the refresh token, the previous one and its
    expiry are retained.

    Args:
        spec: Provider spec
        data: Parsed JSON response
        now: Reference time (default: utcnow)
        previous_refresh_token: Currently stored refresh token
        previous_refresh_expires_at: Currently stored refresh expiry

    Raises:
        TokenExchangeFailed: If the response has no access token
    """
    now = now or utcnow()

    access_token = data.get("access_token")
    if not access_token:
        raise TokenExchangeFailed(f"{spec.display_name} token response has no access_token")

    if data.get("expires_in") is not None:
        access_expires_at = now + timedelta(seconds=int(data["expires_in"]))
    elif data.get("expires_at") is not None:
        access_expires_at = from_timestamp(int(data["expires_at"]))
    else:
        access_expires_at = now + spec.default_access_ttl

    new_refresh_token = data.get("refresh_token")
    rotated = bool(new_refresh_token) and new_refresh_token != previous_refresh_token
    refresh_token = new_refresh_token or previous_refresh_token

    refresh_expires_at = None
    if spec.supports_refresh_expiry and refresh_token:
        if data.get("refresh_token_expires_in") is not None:
            refresh_expires_at = now + timedelta(seconds=int(data["refresh_token_expires_in"]))
        elif not rotated and previous_refresh_expires_at is not None:
            refresh_expires_at = previous_refresh_expires_at
        elif spec.default_refresh_ttl is not None:
            refresh_expires_at = now + spec.default_refresh_ttl

    return TokenSet(
        access_token=access_token,
        refresh_token=refresh_token,
        access_token_expires_at=access_expires_at,
        refresh_token_expires_at=refresh_expires_at,
        raw=data,
    )


def classify_refresh_failure(status_code: int, body: str) -> type[Exception]:
    """
    Decide whether a failed refresh response is terminal.

    Classification is by error-body signature, not bare status: only a
    body naming a dead grant is terminal. 5xx, 429 and unrecognised 4xx
    responses are transient.

    Returns:
        TerminalRefreshRejection or TransientRefreshError
    """
    lowered = (body or "").lower()
    if any(signature in lowered for signature in TERMINAL_SIGNATURES):
        return TerminalRefreshRejection
    return TransientRefreshError


# =============================================================================
# OAuth client
# =============================================================================

class ProviderOAuth:
    """
    OAuth handler for one provider.

    Usage:
        oauth = ProviderOAuth.for_provider("garmin")
        url = oauth.get_authorization_url(state, code_challenge)
        tokens = await oauth.exchange_code(code, code_verifier)
        tokens = await oauth.refresh(refresh_token)

    ``transport`` is passed to ``httpx.AsyncClient`` so callers (and tests)
    can route provider traffic through their own transport.
    """

    def __init__(
        self,
        spec: ProviderSpec,
        credentials: ProviderCredentials,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.spec = spec
        self.credentials = credentials
        self.transport = transport
        self.timeout = timeout if timeout is not None else settings.provider_http_timeout_seconds

    @classmethod
    def for_provider(
        cls,
        provider: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ProviderOAuth":
        """
        Build a client from settings.

        Raises:
            UnknownProvider: Unsupported provider id
            ConfigurationError: Client id/secret not configured
        """
        spec = get_provider(provider)
        credentials = settings.provider_credentials(spec.provider.value)
        if credentials is None:
            raise ConfigurationError(f"{spec.display_name} integration is not configured")
        return cls(spec, credentials, transport=transport)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.timeout)

    def get_authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        """
        Build the provider's authorization URL.

        Args:
            state: CSRF state token
            code_challenge: PKCE S256 challenge (ignored if unsupported)

        Returns:
            Authorization URL string
        """
        params = {
            "client_id": self.credentials.client_id,
            "redirect_uri": self.credentials.redirect_uri,
            "response_type": "code",
            "state": state,
        }
        if self.spec.scopes:
            params["scope"] = self.spec.scope_separator.join(self.spec.scopes)
        if self.spec.supports_pkce and code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params.update(self.spec.extra_authorize_params)

        return f"{self.spec.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> dict:
        """
        Exchange authorization code for tokens.

        Returns:
            Raw token response JSON

        Raises:
            TokenExchangeFailed: Provider rejected the code or was unreachable
        """
        data = {
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.credentials.redirect_uri,
        }
        if self.spec.supports_pkce and code_verifier:
            data["code_verifier"] = code_verifier

        try:
            async with self._client() as client:
                response = await client.post(self.spec.token_url, data=data)
        except httpx.HTTPError as e:
            logger.error(f"{self.spec.display_name} token exchange request failed: {e}")
            raise TokenExchangeFailed(f"Token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            logger.error(
                f"{self.spec.display_name} token exchange failed: "
                f"{response.status_code} {response.text[:200]}"
            )
            raise TokenExchangeFailed(f"Token exchange failed: {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"{self.spec.display_name} token exchange returned a non-JSON body: {response.text[:200]}")
            raise TokenExchangeFailed("Token exchange returned an unreadable response") from e

    async def refresh(self, refresh_token: str) -> dict:
        """
        Refresh an access token. Attempted once, never retried here.

        Returns:
            Raw token response JSON

        Raises:
            TerminalRefreshRejection: Provider says the grant is dead
            TransientRefreshError: Network error, 5xx, 429 or unrecognised failure
        """
        data = {
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            async with self._client() as client:
                response = await client.post(self.spec.token_url, data=data)
        except httpx.HTTPError as e:
            raise TransientRefreshError(
                f"{self.spec.display_name} refresh request failed: {e}"
            ) from e

        if response.status_code == 200:
            try:
                return response.json()
            except ValueError as e:
                raise TransientRefreshError(
                    f"{self.spec.display_name} refresh returned a non-JSON body"
                ) from e

        error_cls = classify_refresh_failure(response.status_code, response.text)
        raise error_cls(
            f"{self.spec.display_name} refresh failed: "
            f"{response.status_code} {response.text[:200]}"
        )

    async def fetch_provider_user_id(self, access_token: str) -> Optional[str]:
        """
        Look up the provider's own id for the authorized account.

        Returns:
            Provider user id, or None if the response carries none

        Raises:
            httpx.HTTPError: Request failed or returned an error status
        """
        async with self._client() as client:
            response = await client.get(
                self.spec.user_id_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            return self.spec.extract_user_id(response.json())

    async def revoke(self, access_token: str) -> bool:
        """
        Revoke access at the provider.

        Returns:
            True if the provider confirmed; True without a call when the
            provider has no revoke endpoint (local deletion is all there is)

        Raises:
            httpx.HTTPError: Request failed
        """
        if not self.spec.supports_revoke:
            return True

        async with self._client() as client:
            response = await client.post(
                self.spec.revoke_url,
                data={self.spec.revoke_token_param: access_token},
                headers={"Authorization": f"Bearer {access_token}"},
            )
            return response.status_code == 200
