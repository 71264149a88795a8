"""
Scheduled Job Run Model
=======================

Last successful run of each periodic job. The dispatcher compares it
with the job's most recent scheduled slot, so a missed tick or a
restart only delays a job instead of skipping it.
"""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class ScheduledJobRun(Base):
    __tablename__ = "scheduled_job_runs"

    job_name: Mapped[str] = mapped_column(String(50), primary_key=True)
    last_run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ScheduledJobRun(job={self.job_name}, last_run_at={self.last_run_at})>"
