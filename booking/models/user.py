"""User model definitions."""

from sqlalchemy import Column, Integer, String
from booking.database import Base

ADMIN_ROLE = "admin"
USER_ROLE = "user"


class User(Base):
    """Represents an application user."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    hashed_password = Column(String)
    role = Column(String, default=USER_ROLE)  # user/admin
    # Only the site owner (an admin) connects a calendar.
    google_refresh_token = Column(String, nullable=True)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE
