"""Scheduled job model definitions."""

from sqlalchemy import Column, Integer, String, Text, UniqueConstraint

from booking.database import Base, UTCDateTime, utcnow

JOB_KIND_REMINDER = "reminder"

JOB_PENDING = "pending"
JOB_DONE = "done"
JOB_SKIPPED = "skipped"
JOB_FAILED = "failed"


class ScheduledJob(Base):
    """A delayed action that survives process restarts."""
    __tablename__ = "scheduled_jobs"
    __table_args__ = (UniqueConstraint("kind", "appointment_id", name="uq_scheduled_jobs_kind_appointment"),)

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)
    # No foreign key: appointments are hard-deleted and the job checks on its own.
    appointment_id = Column(Integer, nullable=False)
    due_at = Column(UTCDateTime, nullable=False, index=True)
    status = Column(String, nullable=False, default=JOB_PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)
