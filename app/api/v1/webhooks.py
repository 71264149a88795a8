"""
Webhooks API Endpoints
======================

Receives billing-provider notifications that the public listener has
already verified and decoded.

Authentication:
    The listener calls us with ``Authorization: Bearer <INTERNAL_API_KEY>``.

Idempotency:
    Each notification carries a globally unique ``notification_id``; the
    event log's unique index turns redeliveries into no-ops.
"""

import logging

from fastapi import APIRouter, Depends

from app.dependencies import DBSession, verify_service_key
from app.schemas.subscription import WebhookAck, WebhookEnvelope
from app.services.lifecycle import LifecycleProcessor

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_service_key)])


@router.post("/subscriptions", response_model=WebhookAck)
async def subscription_webhook(envelope: WebhookEnvelope, db: DBSession) -> WebhookAck:
    """
    Ingest one subscription notification.

    Returns 200 as soon as the event is durably recorded, whether or not
    it could be applied; failures are parked for retry. Returns 503 only
    when the event could not be recorded, so the provider redelivers.
    """
    result = await LifecycleProcessor(db).ingest(envelope)
    return WebhookAck(
        received=True,
        already_processed=result.already_processed,
        applied=result.applied,
        parked=result.parked,
        event_id=result.event_id,
    )
