"""
Internal API routes for cross-service communication.

Protected by X-API-Key header (shared secret between services).
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import (
    get_db_factory,
    get_maintenance_runner,
    to_http_exception,
    verify_api_key,
)
from app.db.session import get_async_db
from app.features.integrations import IntegrationError, StoreError, WebhookCorrelator
from app.features.integrations.schemas import WebhookEventResponse, WebhookResultRequest

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["Internal"],
    dependencies=[Depends(verify_api_key)],
)


# =============================================================================
# Maintenance
# =============================================================================

@router.post("/maintenance/sweep")
async def run_sweep(
    runner=Depends(get_maintenance_runner),
    db_factory=Depends(get_db_factory),
):
    """Run a token maintenance sweep now."""
    result = await runner.run_once(db_factory)
    return result.to_dict()


@router.get("/maintenance/last")
async def last_sweep(runner=Depends(get_maintenance_runner)):
    """Result of the most recent sweep (scheduled or manual)."""
    if runner.last_result is None:
        return {"status": "never_run", "running": runner.running}
    return {
        "status": "ok",
        "running": runner.running,
        "result": runner.last_result.to_dict(),
    }


# =============================================================================
# Webhook processing results
# =============================================================================

@router.post("/webhooks/events/{event_id}/result", response_model=WebhookEventResponse)
async def webhook_event_result(
    event_id: int,
    request: WebhookResultRequest,
    db: AsyncSession = Depends(get_async_db),
):
    """
    Sync worker reports the outcome of processing an event.

    Only the first report for an event is kept.
    """
    try:
        event = await WebhookCorrelator(db).mark_processed(event_id, request.error)
    except StoreError as e:
        raise to_http_exception(e)

    if event is None:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    return event


@router.get("/webhooks/counts")
async def webhook_counts(
    provider: str | None = None,
    db: AsyncSession = Depends(get_async_db),
):
    """Matched vs. orphaned webhook totals."""
    try:
        return await WebhookCorrelator(db).counts(provider)
    except IntegrationError as e:
        raise to_http_exception(e)
