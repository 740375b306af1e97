"""
Webhook correlator.

Inbound notifications name the provider's user id, never ours. Every
event is recorded (matched or orphaned), then marked processed when the
external sync worker reports back.

Components:
- parse_payload(): provider payload -> list of ParsedEvent
- WebhookCorrelator: record, correlate, mark processed, diagnostics
"""

import hmac
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.shared.clock import utcnow
from .exceptions import WebhookPayloadError
from .models import WebhookEvent
from .providers import Provider, get_provider
from .repository import IntegrationRepository, WebhookEventRepository

logger = logging.getLogger(__name__)


@dataclass
class ParsedEvent:
    provider_user_id: Optional[str]
    event_type: str
    activity_id: Optional[str] = None
    payload: dict = field(default_factory=dict)


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


# =============================================================================
# Payload parsing
# =============================================================================

def parse_strava(payload: dict) -> list[ParsedEvent]:
    """
    Strava push subscription event.

    {"owner_id": 123, "object_type": "activity", "aspect_type": "create",
     "object_id": 456, "updates": {...}}
    """
    object_type = payload.get("object_type")
    aspect_type = payload.get("aspect_type")
    if not object_type or not aspect_type or payload.get("owner_id") is None:
        raise WebhookPayloadError("Strava event needs owner_id, object_type and aspect_type")

    return [ParsedEvent(
        provider_user_id=_str_or_none(payload.get("owner_id")),
        event_type=f"{object_type}.{aspect_type}",
        activity_id=_str_or_none(payload.get("object_id")) if object_type == "activity" else None,
        payload=payload,
    )]


def parse_garmin(payload: dict) -> list[ParsedEvent]:
    """
    Garmin push/ping notification.

    Keyed by summary type, each a list of items carrying userId:
    {"activities": [{"userId": "...", "summaryId": "...", "activityId": 1}],
     "deregistrations": [{"userId": "..."}]}
    """
    events = []
    for summary_type, items in payload.items():
        if not isinstance(items, list):
            continue
        for item in items:
            if not isinstance(item, dict):
                continue
            events.append(ParsedEvent(
                provider_user_id=_str_or_none(item.get("userId")),
                event_type=summary_type,
                activity_id=_str_or_none(item.get("activityId") or item.get("summaryId")),
                payload=item,
            ))

    if not events:
        raise WebhookPayloadError("Garmin notification has no summaries")
    return events


def parse_wahoo(payload: dict) -> list[ParsedEvent]:
    """
    Wahoo webhook.

    {"event_type": "workout_summary", "webhook_token": "...",
     "user": {"id": 1}, "workout_summary": {"id": 2, ...}}
    """
    expected = settings.wahoo_webhook_token
    if expected and not hmac.compare_digest(str(payload.get("webhook_token") or ""), expected):
        raise WebhookPayloadError("Wahoo webhook token mismatch")

    event_type = payload.get("event_type")
    user = payload.get("user")
    if not isinstance(event_type, str) or not event_type:
        raise WebhookPayloadError("Wahoo webhook missing event_type")
    if not isinstance(user, dict) or user.get("id") is None:
        raise WebhookPayloadError("Wahoo webhook missing user")

    workout = payload.get("workout_summary") or payload.get("workout") or {}
    recorded = {k: v for k, v in payload.items() if k != "webhook_token"}

    return [ParsedEvent(
        provider_user_id=_str_or_none(user.get("id")),
        event_type=event_type,
        activity_id=_str_or_none(workout.get("id")) if isinstance(workout, dict) else None,
        payload=recorded,
    )]


def parse_google_calendar(payload: dict) -> list[ParsedEvent]:
    """
    Google Calendar push channel notification.

    Google sends headers only; the route folds them into a dict. The
    channel token is set to the provider user id when the watch is created.
    """
    state = payload.get("resource_state")
    if not state:
        raise WebhookPayloadError("Calendar notification missing resource state")

    return [ParsedEvent(
        provider_user_id=_str_or_none(payload.get("channel_token")),
        event_type=f"calendar.{state}",
        activity_id=None,
        payload=payload,
    )]


PARSERS: dict[Provider, Callable[[dict], list[ParsedEvent]]] = {
    Provider.STRAVA: parse_strava,
    Provider.GARMIN: parse_garmin,
    Provider.WAHOO: parse_wahoo,
    Provider.GOOGLE_CALENDAR: parse_google_calendar,
}


def parse_payload(provider: str, payload: Any) -> list[ParsedEvent]:
    """
    Split a provider payload into events.

    Raises:
        UnknownProvider: Unsupported provider
        WebhookPayloadError: Payload is malformed
    """
    spec = get_provider(provider)
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook payload must be a JSON object")
    return PARSERS[spec.provider](payload)


def verify_strava_subscription(
    mode: Optional[str],
    verify_token: Optional[str],
    challenge: Optional[str],
) -> Optional[str]:
    """
    Strava subscription handshake.

    Returns:
        The challenge to echo, or None if the request must be refused
    """
    expected = settings.strava_webhook_verify_token
    if mode != "subscribe" or not challenge or not expected or not verify_token:
        return None
    if not hmac.compare_digest(verify_token, expected):
        return None
    return challenge


# =============================================================================
# Correlator
# =============================================================================

class WebhookCorrelator:
    """
    Records inbound events and their processing outcome.

    Usage:
        correlator = WebhookCorrelator(db)
        events = await correlator.ingest_payload("strava", payload)
        await correlator.mark_processed(events[0].id)
    """

    RECENT_EVENTS = 10

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = WebhookEventRepository(db)
        self.integrations = IntegrationRepository(db)

    async def record(
        self,
        provider: str,
        provider_user_id: Optional[str],
        event_type: str,
        activity_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> WebhookEvent:
        """
        Record one event, correlating it to a user when possible.

        Re-delivery of an event with the same activity id returns the
        existing row. Events with no matching integration are still
        recorded, with user_id NULL.

        Raises:
            StoreError: Persistence failed
        """
        spec = get_provider(provider)
        provider = spec.provider.value

        existing = await self.events.find_duplicate(provider, provider_user_id, event_type, activity_id)
        if existing is not None:
            logger.info(f"Duplicate {provider} webhook {event_type} activity={activity_id}; already recorded")
            return existing

        user_id = None
        if provider_user_id:
            integration = await self.integrations.get_by_provider_user_id(provider, provider_user_id)
            if integration is not None:
                user_id = integration.user_id

        if user_id is None:
            logger.warning(
                f"Orphan {provider} webhook: no integration for provider_user_id={provider_user_id}"
            )

        values = dict(
            provider=provider,
            provider_user_id=provider_user_id,
            user_id=user_id,
            event_type=event_type,
            activity_id=activity_id,
            payload=payload,
            received_at=utcnow(),
            processed=False,
        )
        if activity_id is None:
            event = await self.events.create(**values)
        else:
            event_id = await self.events.insert_or_ignore(
                ("provider", "provider_user_id", "event_type", "activity_id"),
                values,
                index_where=WebhookEvent.activity_id.is_not(None),
            )
            if event_id is None:
                # Lost the race against a concurrent delivery of the same event
                await self.events.commit()
                logger.info(f"Duplicate {provider} webhook {event_type} activity={activity_id}; already recorded")
                return await self.events.find_duplicate(provider, provider_user_id, event_type, activity_id)
            event = await self.events.get_by_id(event_id)
        await self.events.commit()

        logger.info(
            f"Webhook recorded: id={event.id} provider={provider} type={event_type} "
            f"user={user_id or 'orphan'}"
        )
        return event

    async def ingest_payload(self, provider: str, payload: Any) -> list[WebhookEvent]:
        """Parse a raw provider payload and record every event in it."""
        recorded = []
        for parsed in parse_payload(provider, payload):
            recorded.append(await self.record(
                provider,
                parsed.provider_user_id,
                parsed.event_type,
                parsed.activity_id,
                parsed.payload,
            ))
        return recorded

    async def mark_processed(self, event_id: int, error: Optional[str] = None) -> Optional[WebhookEvent]:
        """
        Record the sync worker's outcome.

        Only the first report is kept; later reports leave the row as is.

        Returns:
            The event, or None if it does not exist
        """
        updated = await self.events.mark_processed(event_id, error)
        await self.events.commit()
        if not updated:
            logger.debug(f"Webhook event {event_id} missing or already processed")
        return await self.events.get_by_id(event_id)

    async def status_for(self, user_id: str, provider: str) -> dict:
        """
        Webhook diagnostics for one user's connection.

        Returns:
            Dict with connection info, stats, last/recent events and
            troubleshooting hints
        """
        spec = get_provider(provider)
        provider = spec.provider.value
        integration = await self.integrations.get_for(user_id, provider)

        status = {
            "provider": provider,
            "connected": integration is not None,
            "provider_user_id": integration.provider_user_id if integration else None,
            "stats": {"total": 0, "processed": 0, "failed": 0, "pending": 0, "last_24h": 0},
            "last_event": None,
            "recent_events": [],
            "troubleshooting": [],
        }

        if integration is None:
            status["troubleshooting"].append(f"{spec.display_name} is not connected.")
            return status

        if not integration.provider_user_id:
            status["troubleshooting"].append(
                f"{spec.display_name} account id is missing, so webhooks cannot be "
                f"matched to you. Reconnect {spec.display_name}."
            )
            return status

        since = utcnow() - timedelta(hours=24)
        stats = await self.events.stats_for(provider, integration.provider_user_id, since)
        recent = await self.events.recent_for(
            provider, integration.provider_user_id, limit=self.RECENT_EVENTS
        )

        status["stats"] = stats
        status["recent_events"] = [e.to_dict() for e in recent]
        status["last_event"] = status["recent_events"][0] if recent else None

        if stats["total"] == 0:
            status["troubleshooting"].append(
                f"No webhook events received yet. Check the {spec.display_name} "
                f"webhook subscription, then record a new activity."
            )
        if stats["failed"]:
            status["troubleshooting"].append(
                f"{stats['failed']} event(s) failed to process; see process_error on recent events."
            )
        if stats["pending"]:
            status["troubleshooting"].append(
                f"{stats['pending']} event(s) are waiting to be processed."
            )
        return status

    async def counts(self, provider: Optional[str] = None) -> dict:
        """Matched vs. orphaned event totals."""
        if provider:
            provider = get_provider(provider).provider.value
        return await self.events.correlation_counts(provider)
