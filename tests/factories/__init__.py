"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation. Factories build
plain dicts of model keyword arguments, e.g. ``User(**UserFactory())``.
"""

from .user import UserFactory, UserWithPushTokenFactory
from .task import TaskFactory, OverdueTaskFactory, CompletedTaskFactory
from .meeting import MeetingFactory, UpcomingMeetingFactory, CancelledMeetingFactory
from .notification import (
    NotificationFactory,
    DueNotificationFactory,
    FutureNotificationFactory,
    UrgentNotificationFactory,
)

__all__ = [
    "UserFactory",
    "UserWithPushTokenFactory",
    # Tasks and meetings
    "TaskFactory",
    "OverdueTaskFactory",
    "CompletedTaskFactory",
    "MeetingFactory",
    "UpcomingMeetingFactory",
    "CancelledMeetingFactory",
    # Notifications
    "NotificationFactory",
    "DueNotificationFactory",
    "FutureNotificationFactory",
    "UrgentNotificationFactory",
]
