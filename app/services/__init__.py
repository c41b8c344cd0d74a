# Services module
from app.services.websocket_manager import ConnectionManager
from app.services.notification_store import NotificationStore
from app.services.delivery_channels import (
    BroadcastChannel,
    DeliveryChannel,
    DeliveryKind,
    DeliveryOutcome,
    DeliveryStatus,
    PushChannel,
    build_channels,
)
from app.services.notification_rules import OverdueTaskRule, UpcomingMeetingRule
from app.services.notification_dispatcher import NotificationDispatcher, TickReport
from app.services.notification_service import NotificationService

__all__ = [
    "ConnectionManager",
    "NotificationStore",
    # Delivery
    "BroadcastChannel",
    "DeliveryChannel",
    "DeliveryKind",
    "DeliveryOutcome",
    "DeliveryStatus",
    "PushChannel",
    "build_channels",
    # Dispatch
    "OverdueTaskRule",
    "UpcomingMeetingRule",
    "NotificationDispatcher",
    "TickReport",
    "NotificationService",
]
