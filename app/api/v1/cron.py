"""
Cron API Endpoints
==================

Entry points for an external scheduler, mirroring what the in-process
job worker runs. All routes require the cron secret.
"""

import logging
from datetime import date
from typing import Optional
import uuid

from fastapi import APIRouter, Depends, Query

from app.dependencies import DBSession, verify_cron_secret
from app.schemas.subscription import (
    CronRunResponse,
    DailyMetricRow,
    DeadLetterEntryView,
    DLQReplayResponse,
    DLQResolveRequest,
    DLQSummary,
    PurgeResult,
    SubscriptionHealth,
)
from app.services.dead_letter import DeadLetterQueue
from app.services.lifecycle import LifecycleProcessor
from app.services.scheduled_jobs import ScheduledJobService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_cron_secret)])


@router.post("/subscriptions", response_model=CronRunResponse)
async def run_subscription_jobs(db: DBSession) -> CronRunResponse:
    """
    Run every subscription job that is due now.

    The DLQ drain always runs. Metrics, purge and the health report run
    once their scheduled UTC slot has passed without a recorded run.
    """
    return await ScheduledJobService(db).run_cron()


@router.post("/metrics/{metric_date}", response_model=list[DailyMetricRow])
async def recompute_metrics(metric_date: date, db: DBSession) -> list[DailyMetricRow]:
    """Recompute reconciliation metrics for one UTC day (backfill)."""
    return await ScheduledJobService(db).recompute_metrics(metric_date)


@router.post("/purge", response_model=PurgeResult)
async def purge_events(
    db: DBSession,
    retention_days: Optional[int] = Query(default=None, ge=1),
) -> PurgeResult:
    return await ScheduledJobService(db).purge_old_events(retention_days)


@router.get("/dlq", response_model=DLQSummary)
async def dlq_summary(
    db: DBSession,
    limit: int = Query(default=50, ge=1, le=500),
) -> DLQSummary:
    """Open dead-letter entries and queue breakdown for triage."""
    return await DeadLetterQueue(db).summary(limit=limit)


@router.post("/dlq/{entry_id}/resolve", response_model=DeadLetterEntryView)
async def resolve_dlq_entry(
    entry_id: uuid.UUID,
    db: DBSession,
    request: Optional[DLQResolveRequest] = None,
) -> DeadLetterEntryView:
    """
    Close an open entry by hand. The event is marked processed and is
    never retried again.
    """
    note = request.note if request is not None else None
    entry = await DeadLetterQueue(db).resolve_manually(entry_id, note=note)
    return DeadLetterEntryView.model_validate(entry)


@router.post("/dlq/{entry_id}/replay", response_model=DLQReplayResponse)
async def replay_dlq_entry(entry_id: uuid.UUID, db: DBSession) -> DLQReplayResponse:
    """
    Re-apply the event of an expired entry. On failure it is parked under
    a new entry and the expired one is kept for the record.
    """
    return await LifecycleProcessor(db).replay_dlq_entry(entry_id)


@router.get("/health", response_model=SubscriptionHealth)
async def subscription_health(db: DBSession) -> SubscriptionHealth:
    return await ScheduledJobService(db).subscription_health()
