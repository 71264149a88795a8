"""Add scheduled job runs and manual DLQ resolution

Revision ID: 8f3b2d6e1a57
Revises: 5c1e7a9d2b40
Create Date: 2026-10-19 12:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "8f3b2d6e1a57"
down_revision: Union[str, None] = "5c1e7a9d2b40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # ADD VALUE cannot run inside the migration transaction on older PostgreSQL
    with op.get_context().autocommit_block():
        op.execute("ALTER TYPE dlq_resolved_by ADD VALUE IF NOT EXISTS 'manual'")

    op.create_table(
        "scheduled_job_runs",
        sa.Column("job_name", sa.String(50), primary_key=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    """Downgrade database schema.

    PostgreSQL cannot drop an enum value; 'manual' stays on dlq_resolved_by.
    """
    op.drop_table("scheduled_job_runs")
