"""
Event Recorder
==============

Durable, idempotent, append-only log of billing-provider notifications.

The unique index on ``notification_id`` is the arbiter: concurrent
deliveries of the same notification race on the insert and exactly one
row survives.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.dialect import upsert_insert
from app.models.subscription import Platform, SubscriptionEvent
from app.services.notifications import map_notification
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordResult:
    event_id: uuid.UUID
    already_processed: bool


class EventRecorder:
    """Append-only access to ``subscription_events``."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        notification_id: str,
        platform: Platform,
        notification_type: str,
        original_transaction_id: str,
        subtype: Optional[str] = None,
        raw_payload: Optional[str] = None,
        decoded_payload: Optional[dict[str, Any]] = None,
        signed_at: Optional[datetime] = None,
    ) -> RecordResult:
        """
        Insert a notification unless its id has been seen before.

        Args:
            notification_id: Provider's globally unique notification id.
            platform: Billing provider.
            notification_type: Provider notification type.
            original_transaction_id: Subscription lineage identifier.
            subtype: Provider notification subtype, if any.
            raw_payload: Verbatim payload, kept for forensics.
            decoded_payload: Decoded transaction fields.
            signed_at: Provider signing timestamp.

        Returns:
            RecordResult with ``already_processed=True`` when a row with the
            same ``notification_id`` already existed.
        """
        mapping = map_notification(platform, notification_type, subtype)

        stmt = (
            upsert_insert(self.db, SubscriptionEvent)
            .values(
                id=uuid.uuid4(),
                notification_id=notification_id,
                platform=Platform(platform),
                notification_type=notification_type,
                subtype=subtype,
                event_kind=mapping.kind,
                original_transaction_id=original_transaction_id,
                raw_payload=raw_payload,
                decoded_payload=decoded_payload,
                processed=False,
                received_at=utc_now(),
                signed_at=signed_at,
            )
            .on_conflict_do_nothing(index_elements=["notification_id"])
            .returning(SubscriptionEvent.id)
        )
        result = await self.db.execute(stmt)
        inserted_id = result.scalar_one_or_none()

        if inserted_id is not None:
            logger.info(
                "Recorded %s notification %s (%s) for %s",
                Platform(platform).value,
                notification_id,
                notification_type,
                original_transaction_id,
            )
            return RecordResult(event_id=inserted_id, already_processed=False)

        existing = await self.db.execute(
            select(SubscriptionEvent.id).where(
                SubscriptionEvent.notification_id == notification_id
            )
        )
        logger.info("Duplicate notification %s ignored", notification_id)
        return RecordResult(event_id=existing.scalar_one(), already_processed=True)

    async def get(self, event_id: uuid.UUID) -> Optional[SubscriptionEvent]:
        result = await self.db.execute(
            select(SubscriptionEvent).where(SubscriptionEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_notification_id(self, notification_id: str) -> Optional[SubscriptionEvent]:
        result = await self.db.execute(
            select(SubscriptionEvent).where(
                SubscriptionEvent.notification_id == notification_id
            )
        )
        return result.scalar_one_or_none()

    async def mark_processed(
        self,
        event_id: uuid.UUID,
        subscription_id: Optional[uuid.UUID] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Flag an event as processed, optionally with a terminal error.

        Later calls are no-ops until a manual replay reopens the event.

        Returns:
            True if this call performed the write.
        """
        stmt = (
            update(SubscriptionEvent)
            .where(
                SubscriptionEvent.id == event_id,
                SubscriptionEvent.processed.is_(False),
            )
            .values(
                processed=True,
                subscription_id=subscription_id,
                processing_error=error,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount > 0

    async def reopen(self, event_id: uuid.UUID) -> bool:
        """
        Clear the processed flag and terminal error of an event.

        Only used when an operator replays an expired dead-letter entry.

        Returns:
            True if the event was processed and is now open again.
        """
        result = await self.db.execute(
            update(SubscriptionEvent)
            .where(
                SubscriptionEvent.id == event_id,
                SubscriptionEvent.processed.is_(True),
            )
            .values(processed=False, processing_error=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
