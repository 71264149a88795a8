"""
Dead-Letter Queue Model
=======================

Retry work items for subscription events that could not be applied.
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
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONType, TimestampMixin, enum_values
from app.models.subscription import Platform


class FailureKind(str, Enum):
    """Why an event was parked."""
    INVALID_TRANSITION = "invalid_transition"
    UNRESOLVED_USER = "unresolved_user"
    TRANSIENT = "transient"


class ResolvedBy(str, Enum):
    """How a dead-letter entry left the queue."""
    AUTO = "auto"
    MANUAL = "manual"
    EXPIRED = "expired"


class DeadLetterEntry(Base, TimestampMixin):
    """
    Dead-letter entry wrapping a ``SubscriptionEvent``.

    Polled by the retry scheduler via ``next_attempt_at``. Once
    ``expired`` is set the row is frozen and only manual triage remains.
    """

    __tablename__ = "subscription_events_dlq"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscription_events.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Denormalized for monitoring queries
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(
            Platform,
            name="subscription_platform",
            values_callable=enum_values,
        ),
        nullable=False,
    )
    notification_type: Mapped[str] = mapped_column(String(100), nullable=False)
    original_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Failure info
    failure_kind: Mapped[FailureKind] = mapped_column(
        SQLEnum(
            FailureKind,
            name="dlq_failure_kind",
            values_callable=enum_values,
        ),
        nullable=False,
    )
    last_error: Mapped[str] = mapped_column(Text, nullable=False)
    failure_details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Retry schedule
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Exclusive claim lease
    claim_token: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Terminal state
    expired: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    resolved_by: Mapped[Optional[ResolvedBy]] = mapped_column(
        SQLEnum(
            ResolvedBy,
            name="dlq_resolved_by",
            values_callable=enum_values,
        ),
        nullable=True,
    )

    __table_args__ = (
        Index("idx_dlq_next_attempt", "resolved_at", "expired", "next_attempt_at"),
        Index("idx_dlq_platform_created", "platform", "created_at"),
        Index("idx_dlq_event", "event_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<DeadLetterEntry(event_id={self.event_id}, kind={self.failure_kind}, "
            f"attempts={self.attempt_count}/{self.max_attempts}, expired={self.expired})>"
        )

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None and not self.expired
