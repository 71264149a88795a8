"""Create subscription lifecycle tables

Revision ID: 5c1e7a9d2b40
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "5c1e7a9d2b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PLATFORM_VALUES = ("apple", "google_play", "stripe")
STATUS_VALUES = (
    "unknown",
    "active",
    "expired",
    "in_grace_period",
    "in_billing_retry",
    "revoked",
)
ENVIRONMENT_VALUES = ("production", "sandbox")
EVENT_KIND_VALUES = (
    "purchase",
    "resubscribe",
    "reactivation",
    "renewal",
    "renewal_extended",
    "renewal_preference",
    "plan_change",
    "billing_issue",
    "billing_recovery",
    "grace_period_started",
    "grace_period_expired",
    "expiration",
    "refund",
    "refund_reversed",
    "revoke",
    "informational",
    "unrecognized",
)
FAILURE_KIND_VALUES = ("invalid_transition", "unresolved_user", "transient")
RESOLVED_BY_VALUES = ("auto", "expired")

ENUMS = {
    "subscription_platform": PLATFORM_VALUES,
    "subscription_status": STATUS_VALUES,
    "subscription_environment": ENVIRONMENT_VALUES,
    "subscription_event_kind": EVENT_KIND_VALUES,
    "dlq_failure_kind": FAILURE_KIND_VALUES,
    "dlq_resolved_by": RESOLVED_BY_VALUES,
}


def _enum(name: str) -> postgresql.ENUM:
    """Reference an enum type created up-front (shared across tables)."""
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. Enum types
    # ------------------------------------------------------------------
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(op.get_bind(), checkfirst=True)

    # ------------------------------------------------------------------
    # 2. subscriptions
    # ------------------------------------------------------------------
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("platform", _enum("subscription_platform"), nullable=False),
        sa.Column("original_transaction_id", sa.String(255), nullable=False),
        sa.Column("product_id", sa.String(255), nullable=True),
        sa.Column("bundle_id", sa.String(255), nullable=True),
        sa.Column("status", _enum("subscription_status"), nullable=False, server_default="unknown"),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew_status", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_renew_product_id", sa.String(255), nullable=True),
        sa.Column(
            "environment",
            _enum("subscription_environment"),
            nullable=False,
            server_default="production",
        ),
        sa.Column("linking_token", sa.String(255), nullable=True),
        sa.Column("last_event_signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint(
            "platform",
            "original_transaction_id",
            name="uq_subscriptions_platform_original_txn",
        ),
    )
    op.create_index(
        "idx_subscriptions_user_status",
        "subscriptions",
        ["user_id", "status", "expires_date"],
    )
    op.create_index("idx_subscriptions_platform_status", "subscriptions", ["platform", "status"])
    op.create_index("idx_subscriptions_linking_token", "subscriptions", ["linking_token"])
    op.create_index("idx_subscriptions_original_txn", "subscriptions", ["original_transaction_id"])

    # ------------------------------------------------------------------
    # 3. subscription_events (append-only log)
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("notification_id", sa.String(255), nullable=False, unique=True),
        sa.Column("platform", _enum("subscription_platform"), nullable=False),
        sa.Column("notification_type", sa.String(100), nullable=False),
        sa.Column("subtype", sa.String(100), nullable=True),
        sa.Column("event_kind", _enum("subscription_event_kind"), nullable=False),
        sa.Column(
            "subscription_id",
            sa.Uuid(),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("original_transaction_id", sa.String(255), nullable=False),
        sa.Column("raw_payload", sa.Text(), nullable=True),
        sa.Column("decoded_payload", postgresql.JSONB(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_subscription_events_platform_received",
        "subscription_events",
        ["platform", "received_at"],
    )
    op.create_index(
        "idx_subscription_events_original_txn",
        "subscription_events",
        ["original_transaction_id", "received_at"],
    )
    op.create_index(
        "idx_subscription_events_processed",
        "subscription_events",
        ["processed", "received_at"],
    )

    # ------------------------------------------------------------------
    # 4. subscription_events_dlq
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_events_dlq",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "event_id",
            sa.Uuid(),
            sa.ForeignKey("subscription_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("platform", _enum("subscription_platform"), nullable=False),
        sa.Column("notification_type", sa.String(100), nullable=False),
        sa.Column("original_transaction_id", sa.String(255), nullable=True),
        sa.Column("failure_kind", _enum("dlq_failure_kind"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=False),
        sa.Column("failure_details", postgresql.JSONB(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_token", sa.Uuid(), nullable=True),
        sa.Column("claimed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", _enum("dlq_resolved_by"), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "idx_dlq_next_attempt",
        "subscription_events_dlq",
        ["resolved_at", "expired", "next_attempt_at"],
    )
    op.create_index("idx_dlq_platform_created", "subscription_events_dlq", ["platform", "created_at"])
    op.create_index("idx_dlq_event", "subscription_events_dlq", ["event_id"])

    # ------------------------------------------------------------------
    # 5. subscription_metrics
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_metrics",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("metric_date", sa.Date(), nullable=False),
        sa.Column("platform", _enum("subscription_platform"), nullable=False),
        sa.Column("active_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("in_grace_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("new_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("churned_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reactivated_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("grace_recovered_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("computed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("metric_date", "platform", name="uq_subscription_metrics_date_platform"),
    )
    op.create_index(
        "idx_subscription_metrics_date",
        "subscription_metrics",
        ["metric_date", "platform"],
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("subscription_metrics")
    op.drop_table("subscription_events_dlq")
    op.drop_table("subscription_events")
    op.drop_table("subscriptions")

    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(op.get_bind(), checkfirst=True)
