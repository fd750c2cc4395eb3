# rxflow/models/job_run.py
"""
Tracking model for batch job runs (cron or admin-triggered).
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.models.base import Base


class JobStatus(str, PyEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobType(str, PyEnum):
    PROCESS_DUE_REFILLS = "process_due_refills"
    RETRY_DEAD_LETTERS = "retry_dead_letters"
    REFILL_QUEUE_SUMMARY = "refill_queue_summary"
    PURGE_IDEMPOTENCY_RECORDS = "purge_idempotency_records"


class JobRun(Base):
    """
    One execution of a batch job. Mirrored in Redis while it runs.
    """

    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    job_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status_enum"),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )
    triggered_by: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        doc="Null when run from the CLI / cron.",
    )
    summary: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        doc="JSON string of the aggregate result",
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
