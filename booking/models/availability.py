"""Availability model definitions."""

from sqlalchemy import Boolean, Column, Integer, Time
from booking.database import Base


class AvailabilityRule(Base):
    """Weekly working window, used when no external calendar is connected.

    ``day_of_week`` counts from Sunday (0) to Saturday (6).
    """
    __tablename__ = "availability_rules"

    id = Column(Integer, primary_key=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
