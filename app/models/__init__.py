from app.models.user import User
from app.models.notification import Notification, NotificationType, NotificationPriority
from app.models.task import Task, TaskStatus
from app.models.meeting import Meeting, MeetingParticipant, MeetingStatus

__all__ = [
    "User",
    "Notification",
    "NotificationType",
    "NotificationPriority",
    "Task",
    "TaskStatus",
    "Meeting",
    "MeetingParticipant",
    "MeetingStatus",
]
