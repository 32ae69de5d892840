"""Appointment model definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import relationship

from booking.database import Base, UTCDateTime, utcnow
from booking.models.user import User

STATUS_CONFIRMED = "confirmed"
STATUS_CANCELLED = "cancelled"
STATUS_COMPLETED = "completed"
APPOINTMENT_STATUSES = (STATUS_CONFIRMED, STATUS_CANCELLED, STATUS_COMPLETED)


class Appointment(Base):
    """Represents a booked meeting with the site owner."""
    __tablename__ = "appointments"
    __table_args__ = (
        # One live booking per start instant; backs up the in-process booking lock.
        Index(
            "uq_appointments_active_start",
            "start_time",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, default="")
    start_time = Column(UTCDateTime, nullable=False, index=True)
    end_time = Column(UTCDateTime, nullable=False)
    status = Column(String, nullable=False, default=STATUS_CONFIRMED)
    external_event_id = Column(String, nullable=True, index=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    confirmation_sent = Column(Boolean, nullable=False, default=False)
    attendance_confirmed = Column(Boolean, nullable=False, default=False)
    confirmation_token = Column(String, nullable=True, unique=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    user = relationship(User, lazy="joined")
