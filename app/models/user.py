from sqlalchemy import Column, Integer, String, Boolean, DateTime

from app.database import Base
from app.utils.clock import utc_now


class User(Base):
    """Application user; owner of tasks, organizer of meetings, notification recipient."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=True)
    full_name = Column(String(200))
    is_active = Column(Boolean, default=True)

    # Firebase Cloud Messaging registration token for the user's device
    fcm_token = Column(String(512), nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<User {self.username}>"
