"""
Subscription Job Worker
=======================

Background asyncio worker that runs the scheduled subscription jobs
in-process.

Lifecycle:
    1. ``start()`` is called during the FastAPI lifespan startup.
    2. The worker ticks every ``DLQ_DRAIN_INTERVAL_SECONDS``; each tick
       opens its own session and calls ``ScheduledJobService.run_cron``.
    3. ``stop()`` is called during shutdown. It wakes the loop, lets the
       current tick finish, and cancels it if it overruns.

Several instances may run side by side: DLQ claims are leased and the
metrics/purge jobs are idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from app.config import settings
from app.db.session import session_scope
from app.services.scheduled_jobs import ScheduledJobService

logger = logging.getLogger(__name__)

STOP_TIMEOUT_SECONDS = 10


class SubscriptionJobWorker:
    """Periodic runner for DLQ drain, metrics, purge and health jobs."""

    def __init__(self, interval_seconds: Optional[int] = None) -> None:
        self.interval = interval_seconds or settings.DLQ_DRAIN_INTERVAL_SECONDS
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # -- lifecycle ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the processing loop."""
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run_loop(), name="subscription-jobs")
        logger.info("SubscriptionJobWorker started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to finish."""
        self._stopping.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=STOP_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("SubscriptionJobWorker did not stop in time; cancelled")
            self._task = None
        logger.info("SubscriptionJobWorker stopped")

    # -- main loop ---------------------------------------------------------

    async def _run_loop(self) -> None:
        while not self._stopping.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    async def tick(self) -> None:
        """Run one round of due jobs in a fresh session."""
        try:
            async with session_scope() as session:
                result = await ScheduledJobService(session).run_cron()
            if result.errors:
                logger.warning("Scheduled jobs reported errors: %s", result.errors)
        except Exception:
            logger.exception("SubscriptionJobWorker tick failed")
