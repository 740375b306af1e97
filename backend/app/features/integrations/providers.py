"""
Provider capability table.

Every per-provider difference the credential lifecycle cares about
(endpoints, expiry defaults, refresh-token expiry, revoke support,
maintenance thresholds) is data here, consumed by one generic engine.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional

from .exceptions import UnknownProvider


class Provider(str, Enum):
    """Supported external platforms."""

    STRAVA = "strava"
    GARMIN = "garmin"
    WAHOO = "wahoo"
    GOOGLE_CALENDAR = "google_calendar"


def _user_id_from(*keys: str) -> Callable[[dict], Optional[str]]:
    """Build an extractor returning the first present key as a string."""
    def extract(data: dict) -> Optional[str]:
        for key in keys:
            value = data.get(key)
            if value not in (None, ""):
                return str(value)
        return None
    return extract


def _strava_athlete_id(token_data: dict) -> Optional[str]:
    athlete = token_data.get("athlete") or {}
    if athlete.get("id") is None:
        return None
    return str(athlete["id"])


@dataclass(frozen=True)
class ProviderSpec:
    """
    Static description of one OAuth provider.

    Attributes:
        provider: Provider id
        display_name: Human-readable name
        authorize_url: Browser authorization endpoint
        token_url: Code exchange and refresh endpoint
        user_id_url: Profile endpoint returning the provider's user id
        extract_user_id: Pulls the user id out of the profile response
        revoke_url: Revoke/deauthorize endpoint (None = local delete only)
        scopes: Requested scopes
        scope_separator: How scopes are joined in the authorize URL
        default_access_ttl: Used when the token response has no expiry
        supports_refresh_expiry: Refresh tokens themselves expire
        default_refresh_ttl: Refresh token lifetime when not returned
        access_refresh_threshold: Sweep refreshes access tokens expiring sooner
        refresh_expiry_threshold: Sweep refreshes refresh tokens expiring sooner
        supports_pkce: Send code_challenge / code_verifier
        user_id_from_token: Reads the user id straight from the token response
        extra_authorize_params: Provider-specific authorize URL parameters
        revoke_token_param: Form field carrying the token on revoke
    """

    provider: Provider
    display_name: str
    authorize_url: str
    token_url: str
    user_id_url: str
    extract_user_id: Callable[[dict], Optional[str]]
    revoke_url: Optional[str] = None
    scopes: tuple[str, ...] = ()
    scope_separator: str = " "
    default_access_ttl: timedelta = timedelta(hours=1)
    supports_refresh_expiry: bool = False
    default_refresh_ttl: Optional[timedelta] = None
    access_refresh_threshold: timedelta = timedelta(hours=1)
    refresh_expiry_threshold: timedelta = timedelta(days=30)
    supports_pkce: bool = True
    user_id_from_token: Optional[Callable[[dict], Optional[str]]] = None
    extra_authorize_params: dict[str, Any] = field(default_factory=dict)
    revoke_token_param: str = "token"

    @property
    def supports_revoke(self) -> bool:
        return self.revoke_url is not None


PROVIDERS: dict[Provider, ProviderSpec] = {
    Provider.STRAVA: ProviderSpec(
        provider=Provider.STRAVA,
        display_name="Strava",
        authorize_url="https://www.strava.com/oauth/authorize",
        token_url="https://www.strava.com/oauth/token",
        user_id_url="https://www.strava.com/api/v3/athlete",
        extract_user_id=_user_id_from("id"),
        revoke_url="https://www.strava.com/oauth/deauthorize",
        revoke_token_param="access_token",
        scopes=("read", "activity:read_all", "profile:read_all"),
        scope_separator=",",
        default_access_ttl=timedelta(hours=6),
        access_refresh_threshold=timedelta(hours=1),
        supports_pkce=False,
        user_id_from_token=_strava_athlete_id,
        extra_authorize_params={"approval_prompt": "auto"},
    ),
    Provider.GARMIN: ProviderSpec(
        provider=Provider.GARMIN,
        display_name="Garmin Connect",
        authorize_url="https://connect.garmin.com/oauth2Confirm",
        token_url="https://diauth.garmin.com/di-oauth2-service/oauth/token",
        user_id_url="https://apis.garmin.com/wellness-api/rest/user/id",
        extract_user_id=_user_id_from("userId"),
        # No public revoke endpoint: local deletion only
        revoke_url=None,
        default_access_ttl=timedelta(days=90),
        supports_refresh_expiry=True,
        default_refresh_ttl=timedelta(days=90),
        access_refresh_threshold=timedelta(hours=24),
        refresh_expiry_threshold=timedelta(days=30),
    ),
    Provider.WAHOO: ProviderSpec(
        provider=Provider.WAHOO,
        display_name="Wahoo",
        authorize_url="https://api.wahooligan.com/oauth/authorize",
        token_url="https://api.wahooligan.com/oauth/token",
        user_id_url="https://api.wahooligan.com/v1/user",
        extract_user_id=_user_id_from("id"),
        revoke_url=None,
        scopes=("user_read", "workouts_read", "routes_write", "offline_data"),
        default_access_ttl=timedelta(hours=2),
        supports_pkce=False,
        access_refresh_threshold=timedelta(hours=1),
    ),
    Provider.GOOGLE_CALENDAR: ProviderSpec(
        provider=Provider.GOOGLE_CALENDAR,
        display_name="Google Calendar",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        user_id_url="https://www.googleapis.com/oauth2/v2/userinfo",
        extract_user_id=_user_id_from("id", "email"),
        revoke_url="https://oauth2.googleapis.com/revoke",
        scopes=(
            "https://www.googleapis.com/auth/calendar.readonly",
            "https://www.googleapis.com/auth/userinfo.email",
        ),
        default_access_ttl=timedelta(hours=1),
        access_refresh_threshold=timedelta(minutes=15),
        # access_type=offline + prompt=consent always returns a refresh token
        extra_authorize_params={"access_type": "offline", "prompt": "consent"},
    ),
}


def get_provider(provider: str | Provider) -> ProviderSpec:
    """
    Look up a provider spec.

    Raises:
        UnknownProvider: If the id is not one of the supported providers
    """
    try:
        return PROVIDERS[Provider(provider)]
    except ValueError:
        raise UnknownProvider(f"Unknown provider: {provider}")
