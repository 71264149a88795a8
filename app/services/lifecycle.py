"""
Subscription Lifecycle Processor
================================

Orchestrates one notification end to end:

    record (committed) -> map -> validate -> resolve user -> upsert -> mark processed

Anything that goes wrong after the event is recorded parks it in the
dead-letter queue; the webhook caller is still acknowledged. The retry
scheduler re-enters through ``apply_event`` so both paths share the
same validation and write logic.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import state_machine
from app.core.errors import (
    ConflictError,
    ErrorCodes,
    InvalidTransition,
    LifecycleError,
    ServiceUnavailableError,
    TransientFailure,
    UnresolvedUser,
)
from app.models.subscription import Platform, SubscriptionEvent, SubscriptionStatus
from app.schemas.subscription import (
    DLQReplayResponse,
    DrainResult,
    LinkSubscriptionRequest,
    LinkSubscriptionResponse,
    TransactionPayload,
    WebhookEnvelope,
)
from app.services.cache import EntitlementCache
from app.services.dead_letter import DeadLetterQueue
from app.services.event_recorder import EventRecorder
from app.services.notifications import map_notification
from app.services.subscription_store import SubscriptionKey, SubscriptionStore
from app.services.user_resolver import UserResolver
from app.utils.helpers import ensure_utc

logger = logging.getLogger(__name__)


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    INFORMATIONAL = "informational"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class ApplyResult:
    event_id: uuid.UUID
    outcome: ApplyOutcome
    subscription_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    previous_status: Optional[SubscriptionStatus] = None
    status: Optional[SubscriptionStatus] = None


@dataclass(frozen=True)
class IngestResult:
    event_id: uuid.UUID
    already_processed: bool = False
    applied: bool = False
    parked: bool = False
    outcome: Optional[ApplyOutcome] = None


class LifecycleProcessor:
    """Service that applies recorded notifications to the subscription store."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.recorder = EventRecorder(db)
        self.store = SubscriptionStore(db)
        self.resolver = UserResolver(db)
        self.dlq = DeadLetterQueue(db)

    # -------------------------------------------------------------------------
    # Webhook path
    # -------------------------------------------------------------------------

    async def ingest(self, envelope: WebhookEnvelope) -> IngestResult:
        """
        Record and apply a verified notification.

        The event is committed before anything else happens. From then on
        this method does not raise: failures are parked for retry.

        Raises:
            ServiceUnavailableError: The event could not be recorded; the
                provider should redeliver.
        """
        try:
            recorded = await self.recorder.record(
                notification_id=envelope.notification_id,
                platform=envelope.platform,
                notification_type=envelope.type,
                subtype=envelope.subtype,
                original_transaction_id=envelope.original_transaction_id,
                raw_payload=envelope.raw_payload,
                decoded_payload=envelope.payload.model_dump(mode="json", exclude_none=True),
                signed_at=envelope.signed_at,
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Failed to record notification %s: %s",
                envelope.notification_id,
                e,
            )
            raise ServiceUnavailableError(
                code=ErrorCodes.SUB_RECORD_FAILED,
                message="Notification could not be recorded",
            ) from e

        if recorded.already_processed:
            return IngestResult(event_id=recorded.event_id, already_processed=True)

        event = await self.recorder.get(recorded.event_id)
        return await self.process(event)

    async def process(self, event: SubscriptionEvent) -> IngestResult:
        """Apply a recorded event, parking it on failure."""
        try:
            async with self.db.begin_nested():
                result = await self.apply_event(event)
        except LifecycleError as e:
            error = e
        except SQLAlchemyError as e:
            logger.warning("Database error applying %s: %s", event.notification_id, e)
            error = TransientFailure(str(e))
        except Exception as e:
            logger.exception("Unexpected error applying %s", event.notification_id)
            error = TransientFailure(f"{type(e).__name__}: {e}")
        else:
            await self.db.commit()
            await self.on_applied(result)
            return IngestResult(
                event_id=event.id,
                applied=result.outcome == ApplyOutcome.APPLIED,
                outcome=result.outcome,
            )

        try:
            await self.dlq.park(event, error)
            await self.db.commit()
        except SQLAlchemyError:
            # Still recorded and unprocessed; the orphan sweep re-parks it
            await self.db.rollback()
            logger.exception("Could not park notification %s", event.notification_id)
        return IngestResult(event_id=event.id, parked=True)

    # -------------------------------------------------------------------------
    # Shared apply path (webhook + DLQ retry)
    # -------------------------------------------------------------------------

    async def apply_event(self, event: SubscriptionEvent) -> ApplyResult:
        """
        Apply one recorded event to the store and mark it processed.

        Must run inside a transaction or savepoint owned by the caller.

        Raises:
            InvalidTransition: The transition is not in the graph.
            UnresolvedUser: No user can be linked to the transaction.
            ConcurrentUpdateError: The row changed under us.
        """
        mapping = map_notification(event.platform, event.notification_type, event.subtype)

        if mapping.is_informational:
            await self.recorder.mark_processed(event.id)
            return ApplyResult(event_id=event.id, outcome=ApplyOutcome.INFORMATIONAL)

        key = SubscriptionKey(Platform(event.platform), event.original_transaction_id)
        payload = TransactionPayload.model_validate(event.decoded_payload or {})

        await self.store.ensure(key)
        current = await self.store.get_for_update(key)
        current_status = SubscriptionStatus(current.status)

        if not mapping.is_recognized:
            raise InvalidTransition(
                f"Unrecognized {Platform(event.platform).value} notification "
                f"{event.notification_type}/{event.subtype}",
                notification_type=event.notification_type,
                subtype=event.subtype,
            )

        signed_at = ensure_utc(event.signed_at)
        last_signed_at = ensure_utc(current.last_event_signed_at)
        if signed_at is not None and last_signed_at is not None and signed_at < last_signed_at:
            await self.recorder.mark_processed(
                event.id,
                subscription_id=current.id,
                error=f"superseded: signed {signed_at.isoformat()} before "
                      f"last applied event {last_signed_at.isoformat()}",
            )
            logger.info("Notification %s superseded by a newer event", event.notification_id)
            return ApplyResult(
                event_id=event.id,
                outcome=ApplyOutcome.SUPERSEDED,
                subscription_id=current.id,
                user_id=current.user_id,
                previous_status=current_status,
                status=current_status,
            )

        proposed = mapping.proposed_status or current_status
        if not state_machine.validate(current_status, proposed, mapping.kind):
            raise InvalidTransition(
                state_machine.explain(current_status, proposed, mapping.kind),
                current_status=current_status.value,
                proposed_status=proposed.value,
                event_kind=mapping.kind.value,
            )

        user_id = current.user_id
        if user_id is None:
            user_id = await self.resolver.resolve(
                payload.linking_token,
                event.original_transaction_id,
            )
        if user_id is None:
            raise UnresolvedUser(
                f"No user linked to {key}",
                linking_token=payload.linking_token,
                original_transaction_id=event.original_transaction_id,
            )

        fields = payload.store_fields()
        fields["status"] = proposed
        fields["user_id"] = user_id
        if payload.linking_token:
            fields["linking_token"] = payload.linking_token
        if signed_at is not None:
            fields["last_event_signed_at"] = signed_at

        subscription_id = await self.store.upsert(key, fields, expected=current)
        await self.recorder.mark_processed(event.id, subscription_id=subscription_id)

        logger.info(
            "Applied %s to %s: %s -> %s",
            mapping.kind.value,
            key,
            current_status.value,
            proposed.value,
        )
        return ApplyResult(
            event_id=event.id,
            outcome=ApplyOutcome.APPLIED,
            subscription_id=subscription_id,
            user_id=user_id,
            previous_status=current_status,
            status=proposed,
        )

    async def on_applied(self, result: ApplyResult) -> None:
        """Post-commit hook: drop cached entitlements for the affected user."""
        if result.outcome == ApplyOutcome.APPLIED and result.user_id is not None:
            await EntitlementCache.invalidate(result.user_id)

    async def drain_dlq(self) -> DrainResult:
        """Retry due dead-letter entries through ``apply_event``."""
        return await self.dlq.drain(self.apply_event, self.on_applied)

    async def replay_dlq_entry(self, entry_id: uuid.UUID) -> DLQReplayResponse:
        """
        Re-apply the event behind an expired dead-letter entry.

        The expired entry is left untouched. The event is reopened and
        goes through ``process``: it is applied, or parked again under a
        new entry with a fresh retry budget.

        Raises:
            NotFoundError: No entry with this id.
            ConflictError: The entry has not expired, or its event is
                already back in the queue.
        """
        entry = await self.dlq.get_entry(entry_id)
        if not entry.expired:
            raise ConflictError(
                code=ErrorCodes.SUB_DLQ_ENTRY_STATE,
                message="Only expired dead-letter entries can be replayed",
            )
        if await self.dlq.get_open_entry(entry.event_id) is not None:
            raise ConflictError(
                code=ErrorCodes.SUB_DLQ_ENTRY_STATE,
                message="Event already has an open dead-letter entry",
            )

        await self.recorder.reopen(entry.event_id)
        event = await self.recorder.get(entry.event_id)
        result = await self.process(event)

        new_entry = await self.dlq.get_open_entry(event.id) if result.parked else None
        logger.info(
            "Replayed expired DLQ entry %s for event %s: applied=%s parked=%s",
            entry.id,
            event.id,
            result.applied,
            result.parked,
        )
        return DLQReplayResponse(
            entry_id=entry.id,
            event_id=event.id,
            applied=result.applied,
            outcome=result.outcome.value if result.outcome else None,
            parked=result.parked,
            new_entry_id=new_entry.id if new_entry is not None else None,
        )

    # -------------------------------------------------------------------------
    # Client-side linking
    # -------------------------------------------------------------------------

    async def link_subscription(
        self,
        request: LinkSubscriptionRequest,
    ) -> LinkSubscriptionResponse:
        """
        Register ``user -> transaction`` after a client-side purchase.

        Never changes status. Parked events for the transaction are made
        due immediately so a waiting purchase applies on the next drain.

        Raises:
            ConflictError: The transaction already belongs to another user.
        """
        key = SubscriptionKey(request.platform, request.original_transaction_id)
        current = await self.store.get(key)

        if current is not None and current.user_id and current.user_id != request.user_id:
            raise ConflictError(
                code=ErrorCodes.SUB_LINK_CONFLICT,
                message="Transaction is already linked to another user",
            )

        extra = {}
        for name in ("product_id", "bundle_id", "environment"):
            value = getattr(request, name)
            if value is not None and (current is None or getattr(current, name) is None):
                extra[name] = value

        subscription_id = await self.store.link(
            key,
            request.user_id,
            linking_token=request.linking_token,
            **extra,
        )
        requeued = await self.dlq.reschedule_for_transaction(
            request.platform,
            request.original_transaction_id,
        )
        await self.db.commit()
        await EntitlementCache.invalidate(request.user_id)

        subscription = await self.store.get_by_id(subscription_id)
        logger.info(
            "Linked %s to user %s (%d parked events requeued)",
            key,
            request.user_id,
            requeued,
        )
        return LinkSubscriptionResponse(
            subscription_id=subscription_id,
            user_id=request.user_id,
            status=subscription.status,
            requeued_events=requeued,
        )
