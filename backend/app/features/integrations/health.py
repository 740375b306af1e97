"""
Health evaluator.

Pure function of one integration record and "now". States are checked
in a fixed order, first match wins; each earlier state leaves strictly
less room for automatic recovery than the ones after it.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from app.shared.clock import utcnow
from .models import Integration


class HealthStatus(str, Enum):
    NOT_CONNECTED = "not_connected"
    MISSING_PROVIDER_USER_ID = "missing_provider_user_id"
    REFRESH_TOKEN_INVALID = "refresh_token_invalid"
    MISSING_REFRESH_TOKEN = "missing_refresh_token"
    REFRESH_TOKEN_EXPIRED = "refresh_token_expired"
    TOKEN_EXPIRED = "token_expired"
    HEALTHY = "healthy"


# status -> (message, requires_reconnect)
_MESSAGES: dict[HealthStatus, tuple[str, bool]] = {
    HealthStatus.NOT_CONNECTED: (
        "Not connected. Connect your account to start syncing.",
        False,
    ),
    HealthStatus.MISSING_PROVIDER_USER_ID: (
        "Connection is missing the provider account id, so new activities "
        "cannot be matched to you. Reconnect your account.",
        True,
    ),
    HealthStatus.REFRESH_TOKEN_INVALID: (
        "The provider revoked access. Reconnect your account.",
        True,
    ),
    HealthStatus.MISSING_REFRESH_TOKEN: (
        "Connection cannot be renewed automatically. Reconnect your account.",
        True,
    ),
    HealthStatus.REFRESH_TOKEN_EXPIRED: (
        "Connection expired after a long period without renewal. Reconnect your account.",
        True,
    ),
    HealthStatus.TOKEN_EXPIRED: (
        "Access token expired. It will renew automatically on the next sync.",
        False,
    ),
    HealthStatus.HEALTHY: (
        "Connected and working.",
        False,
    ),
}


@dataclass(frozen=True)
class HealthReport:
    provider: str
    status: HealthStatus
    message: str
    requires_reconnect: bool
    connected: bool
    provider_user_id: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    sync_enabled: bool = False
    last_sync_at: Optional[datetime] = None

    @property
    def action(self) -> str:
        """One remediation instruction for the UI."""
        if self.status == HealthStatus.NOT_CONNECTED:
            return "connect"
        if self.requires_reconnect:
            return "reconnect"
        if self.status == HealthStatus.TOKEN_EXPIRED:
            return "will_self_heal"
        return "none"


def evaluate_status(integration: Optional[Integration], now: Optional[datetime] = None) -> HealthStatus:
    """Classify an integration. See module docstring for the order."""
    if integration is None:
        return HealthStatus.NOT_CONNECTED

    now = now or utcnow()

    if not integration.provider_user_id:
        return HealthStatus.MISSING_PROVIDER_USER_ID
    if integration.refresh_token_invalid:
        return HealthStatus.REFRESH_TOKEN_INVALID
    if not integration.refresh_token:
        return HealthStatus.MISSING_REFRESH_TOKEN
    if integration.refresh_token_expires_at is not None and integration.refresh_token_expires_at <= now:
        return HealthStatus.REFRESH_TOKEN_EXPIRED
    if integration.access_token_expires_at <= now:
        return HealthStatus.TOKEN_EXPIRED
    return HealthStatus.HEALTHY


def evaluate(
    provider: str,
    integration: Optional[Integration],
    now: Optional[datetime] = None
) -> HealthReport:
    """
    Build the diagnostic report for one provider connection.

    Args:
        provider: Provider id
        integration: Stored record, or None if not connected
        now: Reference time (default: utcnow)
    """
    status = evaluate_status(integration, now)
    message, requires_reconnect = _MESSAGES[status]

    if integration is None:
        return HealthReport(
            provider=provider,
            status=status,
            message=message,
            requires_reconnect=requires_reconnect,
            connected=False,
        )

    return HealthReport(
        provider=provider,
        status=status,
        message=message,
        requires_reconnect=requires_reconnect,
        connected=True,
        provider_user_id=integration.provider_user_id,
        access_token_expires_at=integration.access_token_expires_at,
        refresh_token_expires_at=integration.refresh_token_expires_at,
        sync_enabled=bool(integration.sync_enabled),
        last_sync_at=integration.last_sync_at,
    )
