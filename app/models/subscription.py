"""
Subscription Models
===================

SQLAlchemy models for the per-transaction entitlement record and the
append-only log of billing-provider notifications.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONType, TimestampMixin, enum_values
from app.utils.helpers import ensure_utc, utc_now


class Platform(str, Enum):
    """Billing provider that sent the notification."""
    APPLE = "apple"
    GOOGLE_PLAY = "google_play"
    STRIPE = "stripe"


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    UNKNOWN = "unknown"
    ACTIVE = "active"
    EXPIRED = "expired"
    IN_GRACE_PERIOD = "in_grace_period"
    IN_BILLING_RETRY = "in_billing_retry"
    REVOKED = "revoked"


class SubscriptionEnvironment(str, Enum):
    """Store environment a transaction belongs to."""
    PRODUCTION = "production"
    SANDBOX = "sandbox"


class EventKind(str, Enum):
    """Provider-independent meaning of a notification."""
    PURCHASE = "purchase"
    RESUBSCRIBE = "resubscribe"
    REACTIVATION = "reactivation"
    RENEWAL = "renewal"
    RENEWAL_EXTENDED = "renewal_extended"
    RENEWAL_PREFERENCE = "renewal_preference"
    PLAN_CHANGE = "plan_change"
    BILLING_ISSUE = "billing_issue"
    BILLING_RECOVERY = "billing_recovery"
    GRACE_PERIOD_STARTED = "grace_period_started"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    EXPIRATION = "expiration"
    REFUND = "refund"
    REFUND_REVERSED = "refund_reversed"
    REVOKE = "revoke"
    INFORMATIONAL = "informational"
    UNRECOGNIZED = "unrecognized"


PREMIUM_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.IN_GRACE_PERIOD,
)


class Subscription(Base, TimestampMixin):
    """
    Canonical entitlement record, one row per (platform, original_transaction_id).

    Only the lifecycle processor mutates ``status``; every write bumps
    ``version`` so concurrent writers can detect lost updates.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Owning application user (resolved lazily)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    # Transaction lineage
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, name="subscription_platform", values_callable=enum_values),
        nullable=False,
    )
    original_transaction_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Product details
    product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bundle_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(
            SubscriptionStatus,
            name="subscription_status",
            values_callable=enum_values,
        ),
        default=SubscriptionStatus.UNKNOWN,
        nullable=False,
    )

    purchase_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    original_purchase_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    expires_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Renewal info
    auto_renew_status: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    auto_renew_product_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    environment: Mapped[SubscriptionEnvironment] = mapped_column(
        SQLEnum(
            SubscriptionEnvironment,
            name="subscription_environment",
            values_callable=enum_values,
        ),
        default=SubscriptionEnvironment.PRODUCTION,
        nullable=False,
    )

    # Opaque token supplied by the client at purchase (appAccountToken etc.)
    linking_token: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    last_event_signed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "platform",
            "original_transaction_id",
            name="uq_subscriptions_platform_original_txn",
        ),
        Index("idx_subscriptions_user_status", "user_id", "status", "expires_date"),
        Index("idx_subscriptions_platform_status", "platform", "status"),
        Index("idx_subscriptions_linking_token", "linking_token"),
        Index("idx_subscriptions_original_txn", "original_transaction_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(platform={self.platform}, "
            f"original_transaction_id={self.original_transaction_id}, status={self.status})>"
        )

    @property
    def is_premium(self) -> bool:
        """Check if this record grants premium access right now."""
        if self.status not in PREMIUM_STATUSES:
            return False
        if self.expires_date is None:
            return True
        return ensure_utc(self.expires_date) > utc_now()


class SubscriptionEvent(Base):
    """
    Inbound notification, one row per provider notification id.

    Rows are immutable apart from a single ``mark_processed`` write.
    """

    __tablename__ = "subscription_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Idempotency key
    notification_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )

    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, name="subscription_platform", values_callable=enum_values),
        nullable=False,
    )
    notification_type: Mapped[str] = mapped_column(String(100), nullable=False)
    subtype: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    event_kind: Mapped[EventKind] = mapped_column(
        SQLEnum(EventKind, name="subscription_event_kind", values_callable=enum_values),
        nullable=False,
    )

    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    original_transaction_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Kept verbatim for forensics
    raw_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decoded_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    processed: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    signed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("idx_subscription_events_platform_received", "platform", "received_at"),
        Index("idx_subscription_events_original_txn", "original_transaction_id", "received_at"),
        Index("idx_subscription_events_processed", "processed", "received_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionEvent(notification_id={self.notification_id}, "
            f"type={self.notification_type}, processed={self.processed})>"
        )
