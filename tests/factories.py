"""
Test Factories
==============

Builders for envelopes and directly-seeded rows.
"""

from datetime import datetime, timezone
from typing import Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    EventKind,
    Platform,
    Subscription,
    SubscriptionEnvironment,
    SubscriptionEvent,
    SubscriptionStatus,
)
from app.schemas.subscription import TransactionPayload, WebhookEnvelope


def make_envelope(
    notification_type: str,
    *,
    platform: Platform = Platform.APPLE,
    subtype: Optional[str] = None,
    original_transaction_id: str = "txn-1000",
    notification_id: Optional[str] = None,
    signed_at: Optional[datetime] = None,
    **payload,
) -> WebhookEnvelope:
    """Verified envelope as the public listener would send it."""
    return WebhookEnvelope(
        notification_id=notification_id or f"ntf-{uuid.uuid4()}",
        platform=platform,
        type=notification_type,
        subtype=subtype,
        original_transaction_id=original_transaction_id,
        signed_at=signed_at,
        raw_payload="signed.jws.payload",
        payload=TransactionPayload(**payload),
    )


async def seed_subscription(
    db: AsyncSession,
    *,
    platform: Platform = Platform.APPLE,
    original_transaction_id: str = "txn-1000",
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    user_id: Optional[uuid.UUID] = None,
    linking_token: Optional[str] = None,
    expires_date: Optional[datetime] = None,
    created_at: Optional[datetime] = None,
    last_event_signed_at: Optional[datetime] = None,
) -> Subscription:
    """Insert a subscription row directly and commit it."""
    now = datetime.now(timezone.utc)
    subscription = Subscription(
        platform=platform,
        original_transaction_id=original_transaction_id,
        status=status,
        user_id=user_id,
        linking_token=linking_token,
        product_id="premium_monthly",
        expires_date=expires_date,
        environment=SubscriptionEnvironment.PRODUCTION,
        last_event_signed_at=last_event_signed_at,
        created_at=created_at or now,
        updated_at=created_at or now,
    )
    db.add(subscription)
    await db.commit()
    return subscription


async def seed_event(
    db: AsyncSession,
    *,
    notification_type: str = "DID_RENEW",
    event_kind: EventKind = EventKind.RENEWAL,
    platform: Platform = Platform.APPLE,
    original_transaction_id: str = "txn-1000",
    processed: bool = True,
    processing_error: Optional[str] = None,
    received_at: Optional[datetime] = None,
) -> SubscriptionEvent:
    """Insert an event row directly and commit it."""
    event_row = SubscriptionEvent(
        notification_id=f"ntf-{uuid.uuid4()}",
        platform=platform,
        notification_type=notification_type,
        event_kind=event_kind,
        original_transaction_id=original_transaction_id,
        processed=processed,
        processing_error=processing_error,
        received_at=received_at or datetime.now(timezone.utc),
    )
    db.add(event_row)
    await db.commit()
    return event_row
