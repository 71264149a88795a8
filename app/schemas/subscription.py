"""
Subscription Schemas
====================

Pydantic schemas for the webhook envelope, entitlement lookups and
operational (cron / DLQ / metrics) endpoints.
"""

from datetime import date, datetime
from typing import Any, ClassVar, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from app.models.dead_letter import FailureKind, ResolvedBy
from app.models.subscription import (
    Platform,
    SubscriptionEnvironment,
    SubscriptionStatus,
)


# ─── Webhook Envelope ────────────────────────────────────────────────────────


class TransactionPayload(BaseModel):
    """
    Decoded transaction fields carried by a verified notification.

    Provider-specific keys beyond these are preserved as extras and
    stored with the event.
    """

    model_config = ConfigDict(extra="allow")

    product_id: Optional[str] = None
    bundle_id: Optional[str] = None
    purchase_date: Optional[datetime] = None
    original_purchase_date: Optional[datetime] = None
    expires_date: Optional[datetime] = None
    auto_renew_status: Optional[bool] = None
    auto_renew_product_id: Optional[str] = None
    environment: Optional[SubscriptionEnvironment] = None
    linking_token: Optional[str] = None

    # Fields copied onto the subscription record when present
    STORE_FIELDS: ClassVar[tuple[str, ...]] = (
        "product_id",
        "bundle_id",
        "purchase_date",
        "original_purchase_date",
        "expires_date",
        "auto_renew_status",
        "auto_renew_product_id",
        "environment",
    )

    def store_fields(self) -> dict[str, Any]:
        """Subscription columns this payload sets (absent values are left alone)."""
        values = {}
        for name in self.STORE_FIELDS:
            value = getattr(self, name)
            if value is not None:
                values[name] = value
        return values


class WebhookEnvelope(BaseModel):
    """Already-verified notification handed over by the public listener."""

    notification_id: str = Field(min_length=1, max_length=255)
    platform: Platform
    type: str = Field(min_length=1, max_length=100)
    subtype: Optional[str] = Field(default=None, max_length=100)
    original_transaction_id: str = Field(min_length=1, max_length=255)
    signed_at: Optional[datetime] = None
    raw_payload: Optional[str] = None
    payload: TransactionPayload = Field(default_factory=TransactionPayload)


class WebhookAck(BaseModel):
    """Webhook acknowledgement; returned once the event is durable."""

    received: bool = True
    already_processed: bool = False
    applied: bool = False
    parked: bool = False
    event_id: Optional[uuid.UUID] = None


# ─── Entitlements ────────────────────────────────────────────────────────────


class SubscriptionSummary(BaseModel):
    """Entitlement-relevant view of a subscription record."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    platform: Platform
    original_transaction_id: str
    product_id: Optional[str] = None
    status: SubscriptionStatus
    expires_date: Optional[datetime] = None
    auto_renew_status: bool = False
    environment: SubscriptionEnvironment = SubscriptionEnvironment.PRODUCTION
    is_premium: bool = False


class SubscriptionLookupResponse(BaseModel):
    user_id: uuid.UUID
    is_premium: bool
    subscription: Optional[SubscriptionSummary] = None


class PremiumResponse(BaseModel):
    user_id: uuid.UUID
    is_premium: bool


class LinkSubscriptionRequest(BaseModel):
    """Client-side registration of a purchase for a signed-in user."""

    user_id: uuid.UUID
    platform: Platform
    original_transaction_id: str = Field(min_length=1, max_length=255)
    linking_token: Optional[str] = Field(default=None, max_length=255)
    product_id: Optional[str] = Field(default=None, max_length=255)
    bundle_id: Optional[str] = Field(default=None, max_length=255)
    environment: Optional[SubscriptionEnvironment] = None


class LinkSubscriptionResponse(BaseModel):
    subscription_id: uuid.UUID
    user_id: uuid.UUID
    status: SubscriptionStatus
    requeued_events: int = 0


# ─── Operations ──────────────────────────────────────────────────────────────


class DailyMetricRow(BaseModel):
    """Reconciliation counts for one platform on one UTC day."""

    metric_date: date
    platform: Platform
    active_count: int = 0
    in_grace_count: int = 0
    new_count: int = 0
    churned_count: int = 0
    reactivated_count: int = 0
    grace_recovered_count: int = 0
    total_events: int = 0
    failed_events: int = 0


class DrainResult(BaseModel):
    claimed: int = 0
    resolved: int = 0
    retried: int = 0
    expired: int = 0
    orphans_parked: int = 0
    pending: int = 0


class DeadLetterEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_id: uuid.UUID
    platform: Platform
    notification_type: str
    original_transaction_id: Optional[str] = None
    failure_kind: FailureKind
    last_error: str
    attempt_count: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    created_at: datetime
    expired: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[ResolvedBy] = None


class DLQSummary(BaseModel):
    open: int = 0
    due: int = 0
    expired: int = 0
    by_failure_kind: dict[str, int] = Field(default_factory=dict)
    by_platform: dict[str, int] = Field(default_factory=dict)
    oldest_open_at: Optional[datetime] = None
    alert: bool = False
    entries: list[DeadLetterEntryView] = Field(default_factory=list)


class DLQResolveRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


class DLQReplayResponse(BaseModel):
    """Outcome of re-applying an expired entry's event."""

    entry_id: uuid.UUID
    event_id: uuid.UUID
    applied: bool = False
    outcome: Optional[str] = None
    parked: bool = False
    new_entry_id: Optional[uuid.UUID] = None


class PurgeResult(BaseModel):
    cutoff: datetime
    events_deleted: int = 0
    dlq_entries_deleted: int = 0


class SubscriptionHealth(BaseModel):
    """Daily health snapshot of the subscription pipeline."""

    generated_at: datetime
    subscriptions_by_status: dict[str, int] = Field(default_factory=dict)
    unprocessed_events: int = 0
    events_last_24h: int = 0
    failed_events_last_24h: int = 0
    dlq: DLQSummary
    healthy: bool = True


class CronRunResponse(BaseModel):
    """Outcome of one cron invocation; ``None`` means the job was not due."""

    run_at: datetime
    drain: Optional[DrainResult] = None
    metrics: Optional[list[DailyMetricRow]] = None
    purge: Optional[PurgeResult] = None
    health: Optional[SubscriptionHealth] = None
    errors: dict[str, str] = Field(default_factory=dict)
