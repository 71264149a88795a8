"""
Dead-Letter Queue & Retry Scheduler
===================================

Events that were recorded but could not be applied are parked here and
retried with exponential backoff until they either succeed or exhaust
their attempt budget.

Claiming:
    ``SELECT ... FOR UPDATE SKIP LOCKED`` picks candidate rows, then a
    conditional UPDATE stamps a lease (``claim_token`` / ``claimed_until``).
    Only entries carrying our token are processed, so two scheduler
    instances never work the same entry, and a crashed worker's lease
    simply runs out.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional
import uuid

import newrelic.agent
from sqlalchemy import and_, func, not_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import (
    ConflictError,
    ErrorCodes,
    LifecycleError,
    NotFoundError,
    PermanentFailure,
    TransientFailure,
)
from app.models.dead_letter import DeadLetterEntry, FailureKind, ResolvedBy
from app.models.subscription import Platform, SubscriptionEvent
from app.schemas.subscription import DeadLetterEntryView, DLQSummary, DrainResult
from app.services.event_recorder import EventRecorder
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

ApplyFn = Callable[[SubscriptionEvent], Awaitable[Any]]
AfterApplyFn = Callable[[Any], Awaitable[None]]


def compute_backoff(
    attempt_count: int,
    base_seconds: Optional[float] = None,
    multiplier: Optional[float] = None,
    cap_seconds: Optional[float] = None,
) -> timedelta:
    """
    Delay before the next attempt: ``min(base * multiplier ** attempts, cap)``.

    ``attempt_count`` is the number of failed retries so far (0 when the
    event is first parked).
    """
    base = settings.DLQ_BASE_DELAY_SECONDS if base_seconds is None else base_seconds
    mult = settings.DLQ_BACKOFF_MULTIPLIER if multiplier is None else multiplier
    cap = settings.DLQ_MAX_DELAY_SECONDS if cap_seconds is None else cap_seconds

    # Cap the exponent first so huge attempt counts can't overflow
    delay = float(cap)
    if attempt_count < 64:
        delay = min(base * (mult ** max(attempt_count, 0)), cap)
    return timedelta(seconds=delay)


def _open_conditions():
    return (
        DeadLetterEntry.resolved_at.is_(None),
        DeadLetterEntry.expired.is_(False),
    )


def _claimable_conditions(now: datetime):
    return (
        *_open_conditions(),
        DeadLetterEntry.next_attempt_at <= now,
        or_(
            DeadLetterEntry.claimed_until.is_(None),
            DeadLetterEntry.claimed_until < now,
        ),
    )


class DeadLetterQueue:
    """Service for parking and retrying subscription events."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.recorder = EventRecorder(db)

    # -------------------------------------------------------------------------
    # Parking
    # -------------------------------------------------------------------------

    async def park(
        self,
        event: SubscriptionEvent,
        error: LifecycleError,
    ) -> DeadLetterEntry:
        """
        Park ``event`` after a failed application.

        An event has at most one open entry; parking it again refreshes
        the failure info without resetting the retry schedule.

        Args:
            event: The recorded event that failed.
            error: The failure, whose ``failure_kind`` classifies the entry.

        Returns:
            The open dead-letter entry.
        """
        entry = await self.get_open_entry(event.id)
        now = utc_now()

        if entry is not None:
            entry.failure_kind = error.failure_kind
            entry.last_error = error.message
            entry.failure_details = _jsonable({**(entry.failure_details or {}), **error.details})
            entry.updated_at = now
            await self.db.flush()
            return entry

        entry = DeadLetterEntry(
            event_id=event.id,
            platform=event.platform,
            notification_type=event.notification_type,
            original_transaction_id=event.original_transaction_id,
            failure_kind=error.failure_kind,
            last_error=error.message,
            failure_details=_jsonable(error.details),
            attempt_count=0,
            max_attempts=settings.DLQ_MAX_ATTEMPTS,
            next_attempt_at=now + compute_backoff(0),
            created_at=now,
            updated_at=now,
        )
        self.db.add(entry)
        await self.db.flush()

        logger.warning(
            "Parked %s notification %s (%s): %s",
            Platform(event.platform).value,
            event.notification_id,
            error.failure_kind.value,
            error.message,
        )
        return entry

    async def get_open_entry(self, event_id: uuid.UUID) -> Optional[DeadLetterEntry]:
        result = await self.db.execute(
            select(DeadLetterEntry)
            .where(DeadLetterEntry.event_id == event_id, *_open_conditions())
            .order_by(DeadLetterEntry.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def park_orphans(self, older_than: Optional[timedelta] = None) -> int:
        """
        Park events that were recorded but never applied nor parked.

        Covers a crash between recording and parking. Only events older
        than ``older_than`` (default: one claim lease) are considered so
        in-flight webhooks are left alone.
        """
        older_than = older_than or timedelta(seconds=settings.DLQ_CLAIM_TTL_SECONDS)
        cutoff = utc_now() - older_than

        has_entry = (
            select(DeadLetterEntry.id)
            .where(DeadLetterEntry.event_id == SubscriptionEvent.id)
            .exists()
        )
        result = await self.db.execute(
            select(SubscriptionEvent)
            .where(
                SubscriptionEvent.processed.is_(False),
                SubscriptionEvent.received_at < cutoff,
                not_(has_entry),
            )
            .order_by(SubscriptionEvent.received_at)
            .limit(settings.DLQ_BATCH_SIZE)
        )
        orphans = result.scalars().all()

        for event in orphans:
            await self.park(
                event,
                TransientFailure("Event was recorded but never applied", orphan=True),
            )
        if orphans:
            logger.warning("Parked %d orphaned subscription events", len(orphans))
        return len(orphans)

    async def reschedule_for_transaction(
        self,
        platform: Platform,
        original_transaction_id: str,
    ) -> int:
        """Make open entries for a transaction due immediately (e.g. after a user link)."""
        now = utc_now()
        result = await self.db.execute(
            update(DeadLetterEntry)
            .where(
                DeadLetterEntry.platform == Platform(platform),
                DeadLetterEntry.original_transaction_id == original_transaction_id,
                *_open_conditions(),
            )
            .values(next_attempt_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # -------------------------------------------------------------------------
    # Claiming
    # -------------------------------------------------------------------------

    async def claim(self, limit: Optional[int] = None) -> tuple[uuid.UUID, list[DeadLetterEntry]]:
        """
        Lease up to ``limit`` due entries for this worker.

        Commits so the lease is visible to other schedulers before any
        event is processed.

        Returns:
            The claim token and the claimed entries.
        """
        limit = limit or settings.DLQ_BATCH_SIZE
        now = utc_now()
        token = uuid.uuid4()

        candidates = await self.db.execute(
            select(DeadLetterEntry.id)
            .where(*_claimable_conditions(now))
            .order_by(DeadLetterEntry.next_attempt_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        ids = list(candidates.scalars().all())
        if not ids:
            await self.db.commit()
            return token, []

        await self.db.execute(
            update(DeadLetterEntry)
            .where(DeadLetterEntry.id.in_(ids), *_claimable_conditions(now))
            .values(
                claim_token=token,
                claimed_until=now + timedelta(seconds=settings.DLQ_CLAIM_TTL_SECONDS),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        result = await self.db.execute(
            select(DeadLetterEntry)
            .where(DeadLetterEntry.claim_token == token)
            .order_by(DeadLetterEntry.next_attempt_at)
            .execution_options(populate_existing=True)
        )
        return token, list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Draining
    # -------------------------------------------------------------------------

    async def drain(
        self,
        apply_event: ApplyFn,
        after_apply: Optional[AfterApplyFn] = None,
    ) -> DrainResult:
        """
        Retry every due entry once.

        Args:
            apply_event: Re-applies an event; raises ``LifecycleError`` on failure.
            after_apply: Called with ``apply_event``'s result after the
                success has been committed.

        Returns:
            DrainResult with per-outcome counts and the remaining open depth.
        """
        result = DrainResult()

        result.orphans_parked = await self.park_orphans()
        await self.db.commit()

        token, entries = await self.claim()
        result.claimed = len(entries)

        for entry in entries:
            outcome = await self._retry(entry, token, apply_event, after_apply)
            if outcome == "resolved":
                result.resolved += 1
            elif outcome == "expired":
                result.expired += 1
            else:
                result.retried += 1

        result.pending = await self.open_count()
        await self.check_depth(result.pending)

        if result.claimed:
            logger.info(
                "DLQ drain: claimed=%d resolved=%d retried=%d expired=%d pending=%d",
                result.claimed,
                result.resolved,
                result.retried,
                result.expired,
                result.pending,
            )
        return result

    async def _retry(
        self,
        entry: DeadLetterEntry,
        token: uuid.UUID,
        apply_event: ApplyFn,
        after_apply: Optional[AfterApplyFn],
    ) -> str:
        event = await self.recorder.get(entry.event_id)
        try:
            if event is None:
                raise PermanentFailure(f"Event {entry.event_id} no longer exists")
            async with self.db.begin_nested():
                applied = await apply_event(event)
        except PermanentFailure as e:
            return await self._expire(entry, token, e)
        except LifecycleError as e:
            return await self._record_failure(entry, token, e)
        except SQLAlchemyError as e:
            logger.warning("DLQ retry of %s hit a database error: %s", entry.event_id, e)
            return await self._record_failure(entry, token, TransientFailure(str(e)))
        except Exception as e:
            logger.exception("DLQ retry of %s failed unexpectedly", entry.event_id)
            return await self._record_failure(
                entry, token, TransientFailure(f"{type(e).__name__}: {e}")
            )

        now = utc_now()
        await self.db.execute(
            update(DeadLetterEntry)
            .where(DeadLetterEntry.id == entry.id, DeadLetterEntry.claim_token == token)
            .values(
                resolved_at=now,
                resolved_by=ResolvedBy.AUTO,
                last_attempt_at=now,
                claim_token=None,
                claimed_until=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if after_apply is not None:
            await after_apply(applied)
        return "resolved"

    async def _record_failure(
        self,
        entry: DeadLetterEntry,
        token: uuid.UUID,
        error: LifecycleError,
    ) -> str:
        attempts = entry.attempt_count + 1
        if attempts >= entry.max_attempts:
            failure = PermanentFailure(
                f"Gave up after {attempts} attempts: {error.message}",
                **error.details,
            )
            return await self._expire(entry, token, failure, attempts=attempts)

        now = utc_now()
        await self.db.execute(
            update(DeadLetterEntry)
            .where(DeadLetterEntry.id == entry.id, DeadLetterEntry.claim_token == token)
            .values(
                attempt_count=attempts,
                failure_kind=error.failure_kind,
                last_error=error.message,
                failure_details=_jsonable({**(entry.failure_details or {}), **error.details}),
                last_attempt_at=now,
                next_attempt_at=now + compute_backoff(attempts),
                claim_token=None,
                claimed_until=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return "retried"

    async def _expire(
        self,
        entry: DeadLetterEntry,
        token: uuid.UUID,
        failure: PermanentFailure,
        attempts: Optional[int] = None,
    ) -> str:
        now = utc_now()
        await self.db.execute(
            update(DeadLetterEntry)
            .where(DeadLetterEntry.id == entry.id, DeadLetterEntry.claim_token == token)
            .values(
                attempt_count=attempts if attempts is not None else entry.attempt_count,
                last_error=failure.message,
                expired=True,
                resolved_at=now,
                resolved_by=ResolvedBy.EXPIRED,
                last_attempt_at=now,
                next_attempt_at=None,
                claim_token=None,
                claimed_until=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.recorder.mark_processed(entry.event_id, error=failure.message)
        await self.db.commit()

        logger.error(
            "DLQ entry %s for event %s expired: %s",
            entry.id,
            entry.event_id,
            failure.message,
        )
        newrelic.agent.record_custom_event(
            "SubscriptionDLQExpired",
            {
                "event_id": str(entry.event_id),
                "platform": Platform(entry.platform).value,
                "notification_type": entry.notification_type,
                "failure_kind": FailureKind(entry.failure_kind).value,
            },
        )
        return "expired"

    # -------------------------------------------------------------------------
    # Manual triage
    # -------------------------------------------------------------------------

    async def get_entry(self, entry_id: uuid.UUID) -> DeadLetterEntry:
        """
        Raises:
            NotFoundError: No entry with this id.
        """
        result = await self.db.execute(
            select(DeadLetterEntry)
            .where(DeadLetterEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError(
                code=ErrorCodes.SUB_DLQ_ENTRY_NOT_FOUND,
                message=f"Dead-letter entry {entry_id} not found",
            )
        return entry

    async def resolve_manually(
        self,
        entry_id: uuid.UUID,
        note: Optional[str] = None,
    ) -> DeadLetterEntry:
        """
        Close an open entry by hand, e.g. after fixing the record out of band.

        The event is marked processed with the resolution as its terminal
        error, so it is neither retried nor swept up as an orphan.

        Raises:
            NotFoundError: No entry with this id.
            ConflictError: The entry is resolved, expired or leased by a
                running drain.
        """
        entry = await self.get_entry(entry_id)
        now = utc_now()
        details = dict(entry.failure_details or {})
        if note:
            details["resolution_note"] = note

        result = await self.db.execute(
            update(DeadLetterEntry)
            .where(
                DeadLetterEntry.id == entry_id,
                *_open_conditions(),
                or_(
                    DeadLetterEntry.claimed_until.is_(None),
                    DeadLetterEntry.claimed_until < now,
                ),
            )
            .values(
                resolved_at=now,
                resolved_by=ResolvedBy.MANUAL,
                next_attempt_at=None,
                claim_token=None,
                claimed_until=None,
                failure_details=details,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError(
                code=ErrorCodes.SUB_DLQ_ENTRY_STATE,
                message="Dead-letter entry is not open or is being retried",
            )

        resolution = "resolved manually" + (f": {note}" if note else "")
        await self.recorder.mark_processed(entry.event_id, error=resolution)
        await self.db.commit()

        logger.info("DLQ entry %s for event %s resolved manually", entry_id, entry.event_id)
        return await self.get_entry(entry_id)

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    async def open_count(self) -> int:
        result = await self.db.execute(
            select(func.count(DeadLetterEntry.id)).where(*_open_conditions())
        )
        return result.scalar_one()

    async def check_depth(self, depth: Optional[int] = None) -> bool:
        """Alert when open depth exceeds ``DLQ_ALERT_THRESHOLD``."""
        depth = await self.open_count() if depth is None else depth
        if depth <= settings.DLQ_ALERT_THRESHOLD:
            return False

        logger.warning(
            "Subscription DLQ depth %d exceeds threshold %d",
            depth,
            settings.DLQ_ALERT_THRESHOLD,
        )
        newrelic.agent.record_custom_event(
            "SubscriptionDLQAlert",
            {"depth": depth, "threshold": settings.DLQ_ALERT_THRESHOLD},
        )
        return True

    async def summary(self, limit: int = 50) -> DLQSummary:
        """Open-queue breakdown plus the oldest open entries."""
        now = utc_now()
        open_conditions = _open_conditions()

        by_kind = await self.db.execute(
            select(DeadLetterEntry.failure_kind, func.count(DeadLetterEntry.id))
            .where(*open_conditions)
            .group_by(DeadLetterEntry.failure_kind)
        )
        by_platform = await self.db.execute(
            select(DeadLetterEntry.platform, func.count(DeadLetterEntry.id))
            .where(*open_conditions)
            .group_by(DeadLetterEntry.platform)
        )
        due = await self.db.execute(
            select(func.count(DeadLetterEntry.id)).where(
                and_(*open_conditions, DeadLetterEntry.next_attempt_at <= now)
            )
        )
        expired = await self.db.execute(
            select(func.count(DeadLetterEntry.id)).where(DeadLetterEntry.expired.is_(True))
        )
        oldest = await self.db.execute(
            select(DeadLetterEntry)
            .where(*open_conditions)
            .order_by(DeadLetterEntry.created_at)
            .limit(limit)
        )
        entries = list(oldest.scalars().all())

        kinds = {FailureKind(k).value: n for k, n in by_kind.all()}
        platforms = {Platform(p).value: n for p, n in by_platform.all()}
        open_total = sum(kinds.values())

        return DLQSummary(
            open=open_total,
            due=due.scalar_one(),
            expired=expired.scalar_one(),
            by_failure_kind=kinds,
            by_platform=platforms,
            oldest_open_at=entries[0].created_at if entries else None,
            alert=open_total > settings.DLQ_ALERT_THRESHOLD,
            entries=[DeadLetterEntryView.model_validate(e) for e in entries],
        )


def _jsonable(details: dict[str, Any]) -> dict[str, Any]:
    """Failure details go into a JSON column; stringify anything exotic."""
    clean = {}
    for key, value in details.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            clean[key] = value
        else:
            clean[key] = str(getattr(value, "value", value))
    return clean
