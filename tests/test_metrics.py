"""
Metrics Aggregator Tests
========================
"""

from datetime import date, datetime, timedelta, timezone
import uuid

import pytest
from sqlalchemy import func, select

from app.models.metrics import DailyMetric
from app.models.subscription import EventKind, Platform, SubscriptionStatus
from app.services.lifecycle import LifecycleProcessor
from app.services.metrics import MetricsAggregator
from app.utils.helpers import utc_now
from tests.factories import make_envelope, seed_event, seed_subscription

DAY = date(2026, 10, 18)
NOON = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _row(rows, platform):
    return next(r for r in rows if r.platform == platform)


class TestRecompute:

    @pytest.mark.asyncio
    async def test_counts_by_platform(self, db_session):
        await seed_event(db_session, event_kind=EventKind.PURCHASE, received_at=NOON)
        await seed_event(db_session, event_kind=EventKind.PURCHASE, received_at=NOON)
        await seed_event(db_session, event_kind=EventKind.EXPIRATION, received_at=NOON)
        await seed_event(
            db_session,
            platform=Platform.STRIPE,
            event_kind=EventKind.RESUBSCRIBE,
            received_at=NOON,
        )
        await seed_event(
            db_session,
            event_kind=EventKind.PURCHASE,
            processed=False,
            received_at=NOON,
        )
        await seed_event(
            db_session,
            event_kind=EventKind.RENEWAL,
            processing_error="Gave up after 5 attempts",
            received_at=NOON,
        )
        # Outside the day
        await seed_event(
            db_session, event_kind=EventKind.PURCHASE, received_at=NOON + timedelta(days=1)
        )

        rows = await MetricsAggregator(db_session).recompute(DAY)

        assert [r.platform for r in rows] == list(Platform)
        apple = _row(rows, Platform.APPLE)
        assert apple.total_events == 5
        assert apple.new_count == 2
        assert apple.churned_count == 1
        assert apple.failed_events == 1
        stripe = _row(rows, Platform.STRIPE)
        assert stripe.reactivated_count == 1
        assert stripe.total_events == 1
        assert _row(rows, Platform.GOOGLE_PLAY).total_events == 0

    @pytest.mark.asyncio
    async def test_store_snapshot(self, db_session):
        created = NOON - timedelta(days=3)
        await seed_subscription(db_session, original_transaction_id="a", created_at=created)
        await seed_subscription(
            db_session,
            original_transaction_id="b",
            status=SubscriptionStatus.IN_GRACE_PERIOD,
            created_at=created,
        )
        await seed_subscription(
            db_session,
            original_transaction_id="c",
            status=SubscriptionStatus.EXPIRED,
            created_at=created,
        )
        # Created after the day closed
        await seed_subscription(
            db_session, original_transaction_id="d", created_at=NOON + timedelta(days=1)
        )

        rows = await MetricsAggregator(db_session).recompute(DAY)

        apple = _row(rows, Platform.APPLE)
        assert apple.active_count == 1
        assert apple.in_grace_count == 1

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(self, db_session):
        await seed_event(db_session, event_kind=EventKind.PURCHASE, received_at=NOON)
        aggregator = MetricsAggregator(db_session)

        first = await aggregator.recompute(DAY)
        await db_session.commit()
        second = await aggregator.recompute(DAY)
        await db_session.commit()

        assert first == second
        count = await db_session.execute(select(func.count(DailyMetric.id)))
        assert count.scalar_one() == len(Platform)
        assert await aggregator.get(DAY) == second

    @pytest.mark.asyncio
    async def test_recompute_picks_up_late_events(self, db_session):
        aggregator = MetricsAggregator(db_session)
        await aggregator.recompute(DAY)
        await db_session.commit()

        await seed_event(db_session, event_kind=EventKind.PURCHASE, received_at=NOON)
        rows = await aggregator.recompute(DAY)
        await db_session.commit()

        assert _row(rows, Platform.APPLE).new_count == 1
        stored = _row(await aggregator.get(DAY), Platform.APPLE)
        assert stored.new_count == 1

    @pytest.mark.asyncio
    async def test_get_returns_nothing_before_first_run(self, db_session):
        assert await MetricsAggregator(db_session).get(DAY) == []


class TestGraceRecovery:

    @pytest.mark.asyncio
    async def test_billing_failure_then_recovery_counts_once(self, db_session):
        await seed_subscription(db_session, user_id=uuid.uuid4())
        processor = LifecycleProcessor(db_session)

        await processor.ingest(make_envelope("DID_FAIL_TO_RENEW"))
        await processor.ingest(make_envelope("DID_RENEW", subtype="BILLING_RECOVERY"))

        today = utc_now().date()
        rows = await MetricsAggregator(db_session).recompute(today)

        apple = _row(rows, Platform.APPLE)
        assert apple.grace_recovered_count == 1
        assert apple.total_events == 2
        assert apple.active_count == 1
