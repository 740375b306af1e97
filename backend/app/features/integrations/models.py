"""
Integration-related database models.

Models:
- Integration: OAuth credentials for one (user, provider) pair
- PendingAuthorization: In-flight PKCE flow, one per user
- WebhookEvent: Append-only log of inbound provider notifications
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)

from app.models.base import Base
from app.shared.clock import utcnow
from app.shared.encryption import EncryptedText


class Integration(Base):
    """
    Connection between a user and an external provider.

    Exactly one row per (user_id, provider); every write is an upsert
    on that key. Tokens are encrypted at rest when a key is configured.
    """

    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_integrations_user_provider"),
        Index("ix_integrations_provider_user", "provider", "provider_user_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    provider = Column(String(32), nullable=False)

    # Provider's own id for this account (webhook correlation key)
    provider_user_id = Column(String(64), nullable=True)

    # OAuth tokens
    access_token = Column(EncryptedText, nullable=False)
    refresh_token = Column(EncryptedText, nullable=True)
    access_token_expires_at = Column(DateTime, nullable=False)
    refresh_token_expires_at = Column(DateTime, nullable=True)
    refresh_token_invalid = Column(Boolean, nullable=False, default=False)

    # Sync
    sync_enabled = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime, nullable=True)

    # Display name, scopes, etc. Not used by lifecycle logic.
    provider_user_data = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<Integration user_id={self.user_id} provider={self.provider} "
            f"provider_user_id={self.provider_user_id}>"
        )


class PendingAuthorization(Base):
    """
    PKCE flow waiting for the provider redirect.

    Keyed on user_id alone: starting a new flow for any provider
    overwrites the previous one.
    """

    __tablename__ = "pending_authorizations"

    user_id = Column(String(36), primary_key=True)
    provider = Column(String(32), nullable=False)
    state = Column(String(64), nullable=False)
    code_verifier = Column(EncryptedText, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<PendingAuthorization user_id={self.user_id} provider={self.provider}>"


class WebhookEvent(Base):
    """
    Inbound webhook notification.

    Keyed by the provider's user id. user_id is the correlated internal
    user, or NULL for orphan events. Rows are never deleted; the only
    update is processed false -> true.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_provider_user", "provider", "provider_user_id"),
        Index(
            "uq_webhook_events_delivery",
            "provider", "provider_user_id", "event_type", "activity_id",
            unique=True,
            sqlite_where=text("activity_id IS NOT NULL"),
            postgresql_where=text("activity_id IS NOT NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(32), nullable=False)
    provider_user_id = Column(String(64), nullable=True)
    user_id = Column(String(36), nullable=True, index=True)

    event_type = Column(String(64), nullable=False)
    activity_id = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=True)

    received_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    processed = Column(Boolean, nullable=False, default=False)
    process_error = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    @property
    def matched(self) -> bool:
        return self.user_id is not None

    def __repr__(self):
        return (
            f"<WebhookEvent {self.id} provider={self.provider} "
            f"type={self.event_type} processed={self.processed}>"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "provider": self.provider,
            "provider_user_id": self.provider_user_id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "activity_id": self.activity_id,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed": self.processed,
            "process_error": self.process_error,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
