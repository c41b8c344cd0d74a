"""Notification models: the notification type catalogue and per-user notifications."""

from enum import Enum

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Text,
    Integer,
    Boolean,
    ForeignKey,
    JSON,
    Index,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import relationship

from app.database import Base
from app.utils.clock import utc_now


class NotificationPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Dispatch rank; lower ranks are delivered first."""
        return _PRIORITY_RANK[self]

    @property
    def is_elevated(self) -> bool:
        return self in (NotificationPriority.URGENT, NotificationPriority.HIGH)


_PRIORITY_RANK = {
    NotificationPriority.URGENT: 0,
    NotificationPriority.HIGH: 1,
    NotificationPriority.MEDIUM: 2,
    NotificationPriority.LOW: 3,
}

# Type codes referenced by the dispatcher and the derivation rules
MEETING_TYPE = "meeting"
TASK_DEADLINE_TYPE = "task_deadline"
REMINDER_TYPE = "reminder"
SYSTEM_TYPE = "system"

# Types whose push payload asks the mobile app to re-sync the related entity
SYNC_TYPES = frozenset({MEETING_TYPE, TASK_DEADLINE_TYPE})

DEFAULT_NOTIFICATION_TYPES = [
    {"type_code": MEETING_TYPE, "type_name": "Meeting", "icon": "calendar", "color": "#3B82F6"},
    {"type_code": TASK_DEADLINE_TYPE, "type_name": "Task deadline", "icon": "alarm", "color": "#EF4444"},
    {"type_code": REMINDER_TYPE, "type_name": "Reminder", "icon": "bell", "color": "#F59E0B"},
    {"type_code": SYSTEM_TYPE, "type_name": "System", "icon": "info", "color": "#6B7280"},
]


class NotificationType(Base):
    """UI treatment (icon, color, label) shared by a family of notifications."""

    __tablename__ = "notification_types"

    id = Column(Integer, primary_key=True, index=True)
    type_code = Column(String(50), unique=True, nullable=False, index=True)
    type_name = Column(String(100), nullable=False)
    icon = Column(String(50), nullable=True)
    color = Column(String(20), nullable=True)

    def __repr__(self):
        return f"<NotificationType {self.type_code}>"


class Notification(Base):
    """One message owed to one user, delivered once it becomes due."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_due", "is_sent", "scheduled_time"),
    )

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type_id = Column(Integer, ForeignKey("notification_types.id"), nullable=False)

    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)

    scheduled_time = Column(DateTime, nullable=False, index=True)
    priority = Column(String(10), nullable=False, default=NotificationPriority.MEDIUM.value, index=True)

    # is_sent only ever flips false -> true, together with sent_at
    is_sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)

    action_url = Column(String(500), nullable=True)

    # Correlates derived notifications to their entity, e.g. {"meeting_id": 7}
    extra_data = Column("metadata", JSON, nullable=True)

    # "<rule>:<entity id>:<window bucket>" for derived notifications
    dedup_key = Column(String(191), unique=True, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    user = relationship("User", lazy="selectin")
    notification_type = relationship("NotificationType", lazy="selectin")

    @property
    def type_code(self) -> str | None:
        return self.notification_type.type_code if self.notification_type else None

    @property
    def priority_level(self) -> NotificationPriority:
        try:
            return NotificationPriority(self.priority)
        except ValueError:
            return NotificationPriority.MEDIUM

    def __repr__(self):
        return f"<Notification {self.id} {self.priority}: {self.title[:30]}>"


async def seed_notification_types(session: AsyncSession) -> int:
    """Insert any missing default notification types. Returns the number added."""
    result = await session.execute(select(NotificationType.type_code))
    existing = set(result.scalars().all())

    added = 0
    for row in DEFAULT_NOTIFICATION_TYPES:
        if row["type_code"] in existing:
            continue
        session.add(NotificationType(**row))
        added += 1

    if added:
        await session.commit()
    return added
