"""
Subscription Metrics Model
==========================

Daily per-platform reconciliation counts, rebuilt by the metrics job.
"""

from datetime import date, datetime
import uuid

from sqlalchemy import (
    Date,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, enum_values
from app.models.subscription import Platform
from app.utils.helpers import utc_now


class DailyMetric(Base):
    """One row per (metric_date, platform); recomputation replaces it."""

    __tablename__ = "subscription_metrics"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(
            Platform,
            name="subscription_platform",
            values_callable=enum_values,
        ),
        nullable=False,
    )

    # Store snapshot
    active_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    in_grace_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Event log categories
    new_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    churned_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reactivated_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    grace_recovered_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_events: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_events: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("metric_date", "platform", name="uq_subscription_metrics_date_platform"),
        Index("idx_subscription_metrics_date", "metric_date", "platform"),
    )

    def __repr__(self) -> str:
        return f"<DailyMetric(date={self.metric_date}, platform={self.platform})>"
