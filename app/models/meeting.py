from enum import Enum

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from app.database import Base
from app.utils.clock import utc_now


class MeetingStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Meeting(Base):
    """A scheduled meeting; the organizer receives upcoming-meeting reminders."""

    __tablename__ = "meetings"

    id = Column(Integer, primary_key=True, index=True)
    organizer_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    meeting_time = Column(DateTime, nullable=False, index=True)
    duration = Column(Integer, nullable=True)  # minutes
    location = Column(String(255), nullable=True)
    meeting_url = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, default=MeetingStatus.SCHEDULED.value, index=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    organizer = relationship("User", lazy="selectin")
    participants = relationship(
        "MeetingParticipant", back_populates="meeting", cascade="all, delete-orphan", lazy="selectin"
    )

    def __repr__(self):
        return f"<Meeting {self.id} {self.meeting_time}: {self.title[:30]}>"


class MeetingParticipant(Base):
    __tablename__ = "meeting_participants"

    meeting_id = Column(Integer, ForeignKey("meetings.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)

    meeting = relationship("Meeting", back_populates="participants")
