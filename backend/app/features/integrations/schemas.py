"""
Integration schemas.

Pydantic models for integration API requests and responses.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ProviderInfo(BaseModel):
    """Supported provider."""

    provider: str
    display_name: str
    configured: bool
    supports_revoke: bool
    supports_refresh_expiry: bool


class AuthorizationResponse(BaseModel):
    """Start authorization response. url is None when not configured."""

    provider: str
    configured: bool
    authorization_url: Optional[str] = None
    message: Optional[str] = None


class ExchangeRequest(BaseModel):
    """OAuth callback parameters forwarded by the frontend."""

    code: str = Field(min_length=1)
    state: Optional[str] = None


class ExchangeResponse(BaseModel):
    success: bool
    provider: str
    provider_user_id: str


class ConnectionStatus(BaseModel):
    """Health Evaluator output for one provider."""

    provider: str
    status: str
    message: str
    requires_reconnect: bool
    action: str
    connected: bool
    provider_user_id: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    sync_enabled: bool = False
    last_sync_at: Optional[datetime] = None

    @classmethod
    def from_report(cls, report) -> "ConnectionStatus":
        return cls(
            provider=report.provider,
            status=report.status.value,
            message=report.message,
            requires_reconnect=report.requires_reconnect,
            action=report.action,
            connected=report.connected,
            provider_user_id=report.provider_user_id,
            access_token_expires_at=report.access_token_expires_at,
            refresh_token_expires_at=report.refresh_token_expires_at,
            sync_enabled=report.sync_enabled,
            last_sync_at=report.last_sync_at,
        )


class DisconnectResponse(BaseModel):
    provider: str
    remote: str
    deleted: bool
    error: Optional[str] = None


class WebhookAck(BaseModel):
    """Webhook acknowledgement."""

    received: bool = True
    recorded: int
    matched: int
    event_ids: list[int]


class WebhookResultRequest(BaseModel):
    """Processing outcome reported by the sync worker."""

    error: Optional[str] = None


class WebhookEventResponse(BaseModel):
    id: int
    provider: str
    provider_user_id: Optional[str]
    user_id: Optional[str]
    event_type: str
    activity_id: Optional[str]
    received_at: datetime
    processed: bool
    process_error: Optional[str]
    processed_at: Optional[datetime]

    class Config:
        from_attributes = True


class WebhookStatusResponse(BaseModel):
    """Webhook diagnostics for one user's connection."""

    provider: str
    connected: bool
    provider_user_id: Optional[str]
    stats: dict[str, int]
    last_event: Optional[dict[str, Any]]
    recent_events: list[dict[str, Any]]
    troubleshooting: list[str]
