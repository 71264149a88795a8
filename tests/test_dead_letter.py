"""
Dead-Letter Queue Tests
=======================

Backoff schedule, parking, claiming and the retry/expiry lifecycle.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch
import uuid

import pytest
from sqlalchemy import select, update

from app.core.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    PermanentFailure,
    TransientFailure,
)
from app.models.dead_letter import DeadLetterEntry, FailureKind, ResolvedBy
from app.services.dead_letter import DeadLetterQueue, compute_backoff
from app.services.event_recorder import EventRecorder
from app.utils.helpers import ensure_utc, utc_now
from tests.factories import seed_event


async def _park(db, error=None, **event_kwargs):
    event = await seed_event(db, processed=False, **event_kwargs)
    entry = await DeadLetterQueue(db).park(event, error or TransientFailure("boom"))
    await db.commit()
    return event, entry


async def _make_due(db):
    await db.execute(
        update(DeadLetterEntry).values(next_attempt_at=utc_now() - timedelta(seconds=1))
    )
    await db.commit()


async def _reload(db, entry_id) -> DeadLetterEntry:
    result = await db.execute(
        select(DeadLetterEntry)
        .where(DeadLetterEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestBackoff:

    def test_exponential_schedule(self):
        delays = [compute_backoff(n, 60, 2, 86400).total_seconds() for n in range(5)]
        assert delays == [60, 120, 240, 480, 960]

    def test_capped(self):
        assert compute_backoff(20, 60, 2, 3600) == timedelta(hours=1)

    def test_huge_attempt_count_does_not_overflow(self):
        assert compute_backoff(10_000, 60, 2, 3600) == timedelta(hours=1)

    def test_uses_settings_by_default(self, test_settings):
        assert compute_backoff(1) == timedelta(
            seconds=test_settings.DLQ_BASE_DELAY_SECONDS * test_settings.DLQ_BACKOFF_MULTIPLIER
        )


class TestPark:

    @pytest.mark.asyncio
    async def test_creates_open_entry(self, db_session, test_settings):
        before = utc_now()
        event, entry = await _park(db_session, InvalidTransition("nope", current_status="revoked"))

        assert entry.is_open
        assert entry.event_id == event.id
        assert entry.failure_kind == FailureKind.INVALID_TRANSITION
        assert entry.failure_details == {"current_status": "revoked"}
        assert entry.attempt_count == 0
        assert entry.max_attempts == test_settings.DLQ_MAX_ATTEMPTS
        assert ensure_utc(entry.next_attempt_at) >= before + timedelta(
            seconds=test_settings.DLQ_BASE_DELAY_SECONDS
        )

    @pytest.mark.asyncio
    async def test_reparking_reuses_open_entry(self, db_session):
        event, first = await _park(db_session)
        second = await DeadLetterQueue(db_session).park(event, InvalidTransition("still no"))
        await db_session.commit()

        assert second.id == first.id
        assert second.failure_kind == FailureKind.INVALID_TRANSITION
        entries = (await db_session.execute(select(DeadLetterEntry))).scalars().all()
        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_orphaned_events_are_parked(self, db_session):
        old = utc_now() - timedelta(hours=1)
        orphan = await seed_event(db_session, processed=False, received_at=old)
        await seed_event(db_session, processed=False)  # in flight
        await seed_event(db_session, processed=True, received_at=old)

        dlq = DeadLetterQueue(db_session)
        assert await dlq.park_orphans() == 1
        entry = await dlq.get_open_entry(orphan.id)
        assert entry.failure_kind == FailureKind.TRANSIENT
        assert entry.failure_details == {"orphan": True}


class TestClaim:

    @pytest.mark.asyncio
    async def test_only_due_entries_are_claimed(self, db_session):
        await _park(db_session)
        dlq = DeadLetterQueue(db_session)

        _, entries = await dlq.claim()
        assert entries == []

        await _make_due(db_session)
        token, entries = await dlq.claim()
        assert len(entries) == 1
        assert entries[0].claim_token == token

    @pytest.mark.asyncio
    async def test_claimed_entry_is_not_claimed_twice(self, db_session):
        await _park(db_session)
        await _make_due(db_session)
        dlq = DeadLetterQueue(db_session)

        _, first = await dlq.claim()
        _, second = await dlq.claim()

        assert len(first) == 1
        assert second == []

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_reclaimed(self, db_session):
        await _park(db_session)
        await _make_due(db_session)
        dlq = DeadLetterQueue(db_session)

        _, first = await dlq.claim()
        await db_session.execute(
            update(DeadLetterEntry).values(claimed_until=utc_now() - timedelta(seconds=1))
        )
        await db_session.commit()
        token, second = await dlq.claim()

        assert [e.id for e in second] == [first[0].id]
        assert second[0].claim_token == token


class TestDrain:

    @pytest.mark.asyncio
    async def test_successful_retry_resolves_entry(self, db_session):
        event, entry = await _park(db_session)
        await _make_due(db_session)
        apply_event = AsyncMock(return_value="applied")
        after_apply = AsyncMock()

        result = await DeadLetterQueue(db_session).drain(apply_event, after_apply)

        assert result.claimed == 1
        assert result.resolved == 1
        assert result.pending == 0
        apply_event.assert_awaited_once()
        after_apply.assert_awaited_once_with("applied")

        entry = await _reload(db_session, entry.id)
        assert entry.resolved_by == ResolvedBy.AUTO
        assert entry.resolved_at is not None
        assert entry.claim_token is None

    @pytest.mark.asyncio
    async def test_failed_retry_backs_off(self, db_session, test_settings):
        _, entry = await _park(db_session)
        await _make_due(db_session)
        apply_event = AsyncMock(side_effect=TransientFailure("still down"))

        before = utc_now()
        result = await DeadLetterQueue(db_session).drain(apply_event)

        assert result.retried == 1
        assert result.pending == 1
        entry = await _reload(db_session, entry.id)
        assert entry.attempt_count == 1
        assert entry.last_error == "still down"
        assert entry.is_open
        # Second step of the schedule: base * multiplier
        expected = compute_backoff(1)
        assert ensure_utc(entry.next_attempt_at) >= before + expected

    @pytest.mark.asyncio
    async def test_entry_expires_after_max_attempts(self, db_session, test_settings):
        event, entry = await _park(db_session)
        apply_event = AsyncMock(side_effect=InvalidTransition("never legal"))
        dlq = DeadLetterQueue(db_session)

        with patch("app.services.dead_letter.newrelic.agent.record_custom_event") as record:
            for _ in range(test_settings.DLQ_MAX_ATTEMPTS):
                await _make_due(db_session)
                await dlq.drain(apply_event)

        entry = await _reload(db_session, entry.id)
        assert entry.expired is True
        assert entry.resolved_by == ResolvedBy.EXPIRED
        assert entry.attempt_count == test_settings.DLQ_MAX_ATTEMPTS
        assert not entry.is_open
        assert apply_event.await_count == test_settings.DLQ_MAX_ATTEMPTS
        record.assert_called_once()
        assert record.call_args.args[0] == "SubscriptionDLQExpired"

        # Terminal: the event is closed out and never retried again
        stored = await EventRecorder(db_session).get(event.id)
        assert stored.processed is True
        assert stored.processing_error.startswith("Gave up after")

        await _make_due(db_session)
        result = await dlq.drain(apply_event)
        assert result.claimed == 0

    @pytest.mark.asyncio
    async def test_permanent_failure_expires_immediately(self, db_session):
        _, entry = await _park(db_session)
        await _make_due(db_session)
        apply_event = AsyncMock(side_effect=PermanentFailure("gone"))

        result = await DeadLetterQueue(db_session).drain(apply_event)

        assert result.expired == 1
        entry = await _reload(db_session, entry.id)
        assert entry.expired is True
        assert entry.attempt_count == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_treated_as_transient(self, db_session):
        _, entry = await _park(db_session)
        await _make_due(db_session)
        apply_event = AsyncMock(side_effect=KeyError("missing"))

        result = await DeadLetterQueue(db_session).drain(apply_event)

        assert result.retried == 1
        entry = await _reload(db_session, entry.id)
        assert entry.failure_kind == FailureKind.TRANSIENT
        assert "KeyError" in entry.last_error


class TestManualTriage:

    @pytest.mark.asyncio
    async def test_resolve_open_entry(self, db_session):
        event, entry = await _park(db_session)
        dlq = DeadLetterQueue(db_session)

        resolved = await dlq.resolve_manually(entry.id, note="refunded by support")

        assert resolved.resolved_by == ResolvedBy.MANUAL
        assert resolved.resolved_at is not None
        assert resolved.expired is False
        assert resolved.failure_details["resolution_note"] == "refunded by support"
        assert not resolved.is_open

        stored = await EventRecorder(db_session).get(event.id)
        assert stored.processed is True
        assert stored.processing_error == "resolved manually: refunded by support"

        # Neither retried nor swept up again as an orphan
        await _make_due(db_session)
        result = await dlq.drain(AsyncMock())
        assert result.claimed == 0
        assert result.orphans_parked == 0

    @pytest.mark.asyncio
    async def test_resolve_rejects_expired_entry(self, db_session):
        _, entry = await _park(db_session)
        await _make_due(db_session)
        dlq = DeadLetterQueue(db_session)
        await dlq.drain(AsyncMock(side_effect=PermanentFailure("gone")))

        with pytest.raises(ConflictError):
            await dlq.resolve_manually(entry.id)

        entry = await _reload(db_session, entry.id)
        assert entry.resolved_by == ResolvedBy.EXPIRED

    @pytest.mark.asyncio
    async def test_resolve_rejects_leased_entry(self, db_session):
        _, entry = await _park(db_session)
        await _make_due(db_session)
        dlq = DeadLetterQueue(db_session)
        await dlq.claim()

        with pytest.raises(ConflictError):
            await dlq.resolve_manually(entry.id)

    @pytest.mark.asyncio
    async def test_unknown_entry(self, db_session):
        with pytest.raises(NotFoundError):
            await DeadLetterQueue(db_session).resolve_manually(uuid.uuid4())


class TestMonitoring:

    @pytest.mark.asyncio
    async def test_alert_when_depth_exceeds_threshold(self, db_session, monkeypatch, test_settings):
        monkeypatch.setattr(test_settings, "DLQ_ALERT_THRESHOLD", 1)
        for _ in range(2):
            await _park(db_session)

        dlq = DeadLetterQueue(db_session)
        with patch("app.services.dead_letter.newrelic.agent.record_custom_event") as record:
            assert await dlq.check_depth() is True

        record.assert_called_once_with(
            "SubscriptionDLQAlert", {"depth": 2, "threshold": 1}
        )

    @pytest.mark.asyncio
    async def test_no_alert_below_threshold(self, db_session):
        await _park(db_session)
        assert await DeadLetterQueue(db_session).check_depth() is False

    @pytest.mark.asyncio
    async def test_summary(self, db_session):
        await _park(db_session, InvalidTransition("a"))
        await _park(db_session, TransientFailure("b"))
        await _make_due(db_session)

        summary = await DeadLetterQueue(db_session).summary()

        assert summary.open == 2
        assert summary.due == 2
        assert summary.expired == 0
        assert summary.by_failure_kind == {"invalid_transition": 1, "transient": 1}
        assert summary.by_platform == {"apple": 2}
        assert len(summary.entries) == 2
        assert summary.alert is False
