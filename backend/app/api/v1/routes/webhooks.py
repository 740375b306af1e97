"""
Webhook Routes

Inbound provider notifications:
- GET /webhooks/strava - Strava subscription handshake
- POST /webhooks/{provider} - Record provider events
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import to_http_exception, webhook_rate_limit
from app.db.session import get_async_db
from app.features.integrations import (
    IntegrationError,
    Provider,
    StoreError,
    WebhookCorrelator,
    get_provider,
    verify_strava_subscription,
)
from app.features.integrations.schemas import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _google_channel_payload(request: Request) -> dict:
    """Google push notifications carry everything in X-Goog-* headers."""
    headers = request.headers
    return {
        "channel_id": headers.get("x-goog-channel-id"),
        "channel_token": headers.get("x-goog-channel-token"),
        "resource_id": headers.get("x-goog-resource-id"),
        "resource_state": headers.get("x-goog-resource-state"),
        "message_number": headers.get("x-goog-message-number"),
    }


@router.get("/strava")
async def strava_subscription_handshake(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """Echo hub.challenge when Strava verifies the subscription."""
    challenge = verify_strava_subscription(hub_mode, hub_verify_token, hub_challenge)
    if challenge is None:
        logger.warning("Strava subscription handshake refused")
        raise HTTPException(status_code=403, detail="Verification failed")
    return {"hub.challenge": challenge}


@router.post(
    "/{provider}",
    response_model=WebhookAck,
    dependencies=[Depends(webhook_rate_limit)],
)
async def receive_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    """
    Record a provider notification.

    Acknowledges with 200 once every event in the payload is recorded,
    including events that match no connected user.
    """
    try:
        spec = get_provider(provider)
        if spec.provider == Provider.GOOGLE_CALENDAR:
            payload = _google_channel_payload(request)
        else:
            try:
                payload = await request.json()
            except ValueError:
                raise HTTPException(status_code=400, detail="Invalid JSON payload")

        events = await WebhookCorrelator(db).ingest_payload(spec.provider.value, payload)
    except (IntegrationError, StoreError) as e:
        raise to_http_exception(e)

    return WebhookAck(
        recorded=len(events),
        matched=sum(1 for e in events if e.matched),
        event_ids=[e.id for e in events],
    )
