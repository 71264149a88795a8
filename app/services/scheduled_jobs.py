"""
Scheduled Jobs
==============

Background tasks for subscription maintenance:
- DLQ drain (every ``DLQ_DRAIN_INTERVAL_SECONDS``)
- Daily metrics recompute for the previous UTC day
- Weekly purge of old processed events and resolved DLQ entries
- Daily pipeline health report

Driven by the in-process ``SubscriptionJobWorker`` and by the cron
endpoint; both call ``run_cron`` which decides which jobs are due.

A job is due once its most recent scheduled slot has passed and the
database shows no run since: metrics look at the stored rows for the
target day, purge and health at ``scheduled_job_runs``. Late or missed
ticks therefore delay a job, never skip it.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

import newrelic.agent
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.dialect import upsert_insert
from app.models.dead_letter import DeadLetterEntry
from app.models.metrics import DailyMetric
from app.models.scheduled_job import ScheduledJobRun
from app.models.subscription import (
    Platform,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from app.schemas.subscription import (
    CronRunResponse,
    DailyMetricRow,
    DrainResult,
    PurgeResult,
    SubscriptionHealth,
)
from app.services.dead_letter import DeadLetterQueue
from app.services.lifecycle import LifecycleProcessor
from app.services.metrics import MetricsAggregator
from app.utils.helpers import day_bounds, ensure_utc, utc_now

logger = logging.getLogger(__name__)

PURGE_JOB = "purge"
HEALTH_JOB = "health"


class ScheduledJobService:
    """Service for scheduled background jobs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def drain_dlq(self) -> DrainResult:
        """
        Retry due dead-letter entries.

        Run every 5 minutes.
        """
        return await LifecycleProcessor(self.db).drain_dlq()

    async def recompute_metrics(self, day: date) -> list[DailyMetricRow]:
        """
        Rebuild the reconciliation rows for ``day``.

        Run daily at ``METRICS_RUN_HOUR_UTC`` for the previous day.
        """
        rows = await MetricsAggregator(self.db).recompute(day)
        await self.db.commit()
        return rows

    async def purge_old_events(self, retention_days: Optional[int] = None) -> PurgeResult:
        """
        Delete history older than the retention window.

        Run weekly. Removes resolved DLQ entries resolved before the
        cutoff, then processed events received before the cutoff that no
        remaining DLQ entry references. Unprocessed events are kept.

        Args:
            retention_days: Override for ``EVENT_RETENTION_DAYS``.

        Returns:
            PurgeResult with the cutoff and deleted counts

        Raises:
            ValueError: ``retention_days`` is below 1.
        """
        if retention_days is None:
            retention_days = settings.EVENT_RETENTION_DAYS
        if retention_days < 1:
            raise ValueError(f"retention_days must be at least 1, got {retention_days}")
        cutoff = utc_now() - timedelta(days=retention_days)

        dlq_result = await self.db.execute(
            delete(DeadLetterEntry)
            .where(
                DeadLetterEntry.resolved_at.is_not(None),
                DeadLetterEntry.resolved_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )

        referenced = (
            select(DeadLetterEntry.id)
            .where(DeadLetterEntry.event_id == SubscriptionEvent.id)
            .exists()
        )
        event_result = await self.db.execute(
            delete(SubscriptionEvent)
            .where(
                SubscriptionEvent.processed.is_(True),
                SubscriptionEvent.received_at < cutoff,
                ~referenced,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        result = PurgeResult(
            cutoff=cutoff,
            events_deleted=event_result.rowcount,
            dlq_entries_deleted=dlq_result.rowcount,
        )
        logger.info(
            "Purged %d subscription events and %d DLQ entries older than %s",
            result.events_deleted,
            result.dlq_entries_deleted,
            cutoff.isoformat(),
        )
        return result

    async def subscription_health(self) -> SubscriptionHealth:
        """
        Snapshot of store and pipeline health.

        Run daily at ``HEALTH_REPORT_HOUR_UTC``; also served on demand.
        """
        now = utc_now()
        since = now - timedelta(hours=24)

        by_status = await self.db.execute(
            select(Subscription.status, func.count(Subscription.id)).group_by(
                Subscription.status
            )
        )
        unprocessed = await self.db.execute(
            select(func.count(SubscriptionEvent.id)).where(
                SubscriptionEvent.processed.is_(False)
            )
        )
        recent = await self.db.execute(
            select(func.count(SubscriptionEvent.id)).where(
                SubscriptionEvent.received_at >= since
            )
        )
        recent_failed = await self.db.execute(
            select(func.count(SubscriptionEvent.id)).where(
                SubscriptionEvent.received_at >= since,
                SubscriptionEvent.processing_error.is_not(None),
            )
        )
        dlq = await DeadLetterQueue(self.db).summary(limit=10)

        health = SubscriptionHealth(
            generated_at=now,
            subscriptions_by_status={
                SubscriptionStatus(s).value: n for s, n in by_status.all()
            },
            unprocessed_events=unprocessed.scalar_one(),
            events_last_24h=recent.scalar_one(),
            failed_events_last_24h=recent_failed.scalar_one(),
            dlq=dlq,
            healthy=not dlq.alert and dlq.expired == 0,
        )

        log = logger.info if health.healthy else logger.warning
        log(
            "Subscription health: healthy=%s unprocessed=%d dlq_open=%d dlq_expired=%d",
            health.healthy,
            health.unprocessed_events,
            dlq.open,
            dlq.expired,
        )
        newrelic.agent.record_custom_event(
            "SubscriptionHealth",
            {
                "healthy": health.healthy,
                "unprocessed_events": health.unprocessed_events,
                "events_last_24h": health.events_last_24h,
                "failed_events_last_24h": health.failed_events_last_24h,
                "dlq_open": dlq.open,
                "dlq_expired": dlq.expired,
            },
        )
        return health

    # -------------------------------------------------------------------------
    # Dispatcher
    # -------------------------------------------------------------------------

    @staticmethod
    def latest_slot(now: datetime, hour: int, weekday: Optional[int] = None) -> datetime:
        """Most recent ``hour``:00 UTC (on ``weekday`` when given) at or before ``now``."""
        slot = now.replace(hour=hour, minute=0, second=0, microsecond=0)
        if slot > now:
            slot -= timedelta(days=1)
        if weekday is not None:
            slot -= timedelta(days=(slot.weekday() - weekday) % 7)
        return slot

    async def metrics_due(self, now: datetime) -> Optional[date]:
        """
        Day whose metrics still need computing, or None.

        The target is the day before the latest metrics slot. It is due
        while any platform row is missing or was computed before the day
        was over.
        """
        slot = self.latest_slot(now, settings.METRICS_RUN_HOUR_UTC)
        target = slot.date() - timedelta(days=1)
        _, day_end = day_bounds(target)

        result = await self.db.execute(
            select(func.count(DailyMetric.id), func.min(DailyMetric.computed_at)).where(
                DailyMetric.metric_date == target
            )
        )
        rows, oldest = result.one()
        if rows < len(Platform) or ensure_utc(oldest) < day_end:
            return target
        return None

    async def job_due(self, job: str, slot: datetime) -> bool:
        """True when ``job`` has not run since ``slot``."""
        last_run_at = await self.db.scalar(
            select(ScheduledJobRun.last_run_at).where(ScheduledJobRun.job_name == job)
        )
        return last_run_at is None or ensure_utc(last_run_at) < slot

    async def mark_run(self, job: str, run_at: datetime) -> None:
        stmt = upsert_insert(self.db, ScheduledJobRun).values(job_name=job, last_run_at=run_at)
        stmt = stmt.on_conflict_do_update(
            index_elements=["job_name"],
            set_={"last_run_at": stmt.excluded.last_run_at},
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def run_cron(self, now: Optional[datetime] = None) -> CronRunResponse:
        """
        Run every job that is due at ``now``.

        One failing job does not stop the others; its error is reported
        in the response and the job stays due for the next run.
        """
        now = ensure_utc(now) or utc_now()
        response = CronRunResponse(run_at=now)

        try:
            response.drain = await self.drain_dlq()
        except Exception as e:
            await self._job_failed(response, "drain", e)

        try:
            metrics_day = await self.metrics_due(now)
            if metrics_day is not None:
                response.metrics = await self.recompute_metrics(metrics_day)
        except Exception as e:
            await self._job_failed(response, "metrics", e)

        purge_slot = self.latest_slot(now, settings.METRICS_RUN_HOUR_UTC, settings.PURGE_WEEKDAY)
        try:
            if await self.job_due(PURGE_JOB, purge_slot):
                response.purge = await self.purge_old_events()
                await self.mark_run(PURGE_JOB, now)
        except Exception as e:
            await self._job_failed(response, "purge", e)

        health_slot = self.latest_slot(now, settings.HEALTH_REPORT_HOUR_UTC)
        try:
            if await self.job_due(HEALTH_JOB, health_slot):
                response.health = await self.subscription_health()
                await self.mark_run(HEALTH_JOB, now)
        except Exception as e:
            await self._job_failed(response, "health", e)

        return response

    async def _job_failed(self, response: CronRunResponse, job: str, error: Exception) -> None:
        await self.db.rollback()
        logger.exception("Scheduled job %s failed", job)
        response.errors[job] = f"{type(error).__name__}: {error}"
