"""
Metrics Aggregator
==================

Daily per-platform reconciliation counts computed from the event log
and the subscription store.

Recomputing a day replaces its rows, so the job can be re-run at will.
"""

import logging
from datetime import date
import uuid

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.dialect import upsert_insert
from app.models.metrics import DailyMetric
from app.models.subscription import (
    EventKind,
    Platform,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from app.schemas.subscription import DailyMetricRow
from app.utils.helpers import day_bounds, utc_now

logger = logging.getLogger(__name__)

# Event kind -> counter it feeds (successfully applied events only)
KIND_COUNTERS: dict[EventKind, str] = {
    EventKind.PURCHASE: "new_count",
    EventKind.EXPIRATION: "churned_count",
    EventKind.REFUND: "churned_count",
    EventKind.REVOKE: "churned_count",
    EventKind.RESUBSCRIBE: "reactivated_count",
    EventKind.REACTIVATION: "reactivated_count",
    EventKind.BILLING_RECOVERY: "grace_recovered_count",
}

STATUS_COUNTERS: dict[SubscriptionStatus, str] = {
    SubscriptionStatus.ACTIVE: "active_count",
    SubscriptionStatus.IN_GRACE_PERIOD: "in_grace_count",
}

COUNT_FIELDS = (
    "active_count",
    "in_grace_count",
    "new_count",
    "churned_count",
    "reactivated_count",
    "grace_recovered_count",
    "total_events",
    "failed_events",
)


class MetricsAggregator:
    """Service that rebuilds ``subscription_metrics`` rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def recompute(self, day: date) -> list[DailyMetricRow]:
        """
        Recompute the metrics for one UTC day.

        Events count toward ``day`` when received in
        ``[day 00:00 UTC, day+1 00:00 UTC)``. Store counts cover rows
        created before the end of the day.

        Args:
            day: The UTC calendar date.

        Returns:
            One row per platform, in platform enum order.
        """
        start, end = day_bounds(day)
        counts: dict[Platform, dict[str, int]] = {
            platform: dict.fromkeys(COUNT_FIELDS, 0) for platform in Platform
        }

        failed = case((SubscriptionEvent.processing_error.is_(None), 0), else_=1)
        event_rows = await self.db.execute(
            select(
                SubscriptionEvent.platform,
                SubscriptionEvent.event_kind,
                SubscriptionEvent.processed,
                failed.label("failed"),
                func.count(SubscriptionEvent.id),
            )
            .where(
                SubscriptionEvent.received_at >= start,
                SubscriptionEvent.received_at < end,
            )
            .group_by(
                SubscriptionEvent.platform,
                SubscriptionEvent.event_kind,
                SubscriptionEvent.processed,
                failed,
            )
        )
        for platform, kind, processed, is_failed, n in event_rows.all():
            row = counts[Platform(platform)]
            row["total_events"] += n
            if is_failed:
                row["failed_events"] += n
                continue
            counter = KIND_COUNTERS.get(EventKind(kind))
            if processed and counter:
                row[counter] += n

        store_rows = await self.db.execute(
            select(Subscription.platform, Subscription.status, func.count(Subscription.id))
            .where(
                Subscription.created_at < end,
                Subscription.status.in_(list(STATUS_COUNTERS)),
            )
            .group_by(Subscription.platform, Subscription.status)
        )
        for platform, status, n in store_rows.all():
            counts[Platform(platform)][STATUS_COUNTERS[SubscriptionStatus(status)]] += n

        rows = [
            DailyMetricRow(metric_date=day, platform=platform, **values)
            for platform, values in counts.items()
        ]
        for row in rows:
            await self._save(row)

        logger.info(
            "Recomputed subscription metrics for %s: %s",
            day.isoformat(),
            {r.platform.value: r.total_events for r in rows},
        )
        return rows

    async def _save(self, row: DailyMetricRow) -> None:
        values = row.model_dump()
        values["id"] = uuid.uuid4()
        values["computed_at"] = utc_now()

        stmt = upsert_insert(self.db, DailyMetric).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["metric_date", "platform"],
            set_={name: getattr(stmt.excluded, name) for name in (*COUNT_FIELDS, "computed_at")},
        )
        await self.db.execute(stmt)

    async def get(self, day: date) -> list[DailyMetricRow]:
        """Stored rows for ``day`` without recomputing."""
        result = await self.db.execute(
            select(DailyMetric).where(DailyMetric.metric_date == day)
        )
        stored = {Platform(m.platform): m for m in result.scalars().all()}
        return [
            DailyMetricRow(
                metric_date=day,
                platform=platform,
                **{name: getattr(stored[platform], name) for name in COUNT_FIELDS},
            )
            for platform in Platform
            if platform in stored
        ]
