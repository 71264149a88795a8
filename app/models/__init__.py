"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from app.models.subscription import (
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
    SubscriptionEnvironment,
    EventKind,
    Platform,
    PREMIUM_STATUSES,
)
from app.models.dead_letter import (
    DeadLetterEntry,
    FailureKind,
    ResolvedBy,
)
from app.models.metrics import DailyMetric
from app.models.scheduled_job import ScheduledJobRun

__all__ = [
    # Subscription
    "Subscription",
    "SubscriptionEvent",
    "SubscriptionStatus",
    "SubscriptionEnvironment",
    "EventKind",
    "Platform",
    "PREMIUM_STATUSES",
    # Dead-letter queue
    "DeadLetterEntry",
    "FailureKind",
    "ResolvedBy",
    # Metrics
    "DailyMetric",
    # Scheduling
    "ScheduledJobRun",
]
