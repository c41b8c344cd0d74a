"""
Notification creation with immediate delivery.

Creating a notification through the API delivers it right away instead of
waiting for the next dispatch tick, as long as at least one channel can
reach the recipient:

- scheduled_time <= now: the notification is claimed first, so the
  dispatcher's later claim fails and it is not sent again;
- scheduled_time in the future: it is delivered as a creation
  acknowledgment without claiming, and the dispatcher delivers it a second
  time once it becomes due.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.notification import Notification
from app.services.delivery_channels import DeliveryChannel, DeliveryKind, DeliveryOutcome
from app.services.notification_dispatcher import deliver_to_channels
from app.services.notification_store import NotificationStore
from app.utils.clock import utc_now, as_naive_utc

logger = logging.getLogger(__name__)


@dataclass
class CreateResult:
    notification: Notification
    claimed: bool = False
    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    @property
    def attempted(self) -> bool:
        return bool(self.outcomes)


class NotificationService:
    """Creates notifications and performs the creation-time delivery."""

    def __init__(self, session_factory: async_sessionmaker, channels: Sequence[DeliveryChannel]):
        self.session_factory = session_factory
        self.channels = list(channels)

    def _has_deliverable_address(self, notification: Notification) -> bool:
        return any(
            channel.is_addressable(channel.resolve_address(notification))
            for channel in self.channels
        )

    async def create_notification(
        self,
        fields: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> CreateResult:
        """Store a notification and attempt delivery immediately.

        Delivery errors never fail the creation; they are reported in the
        returned outcomes.
        """
        now = now or utc_now()

        async with self.session_factory() as session:
            store = NotificationStore(session)
            created = await store.create(fields)
            # Reload with the recipient and type attached
            notification = await store.get(created.id) or created
            result = CreateResult(notification=notification)

            if not self._has_deliverable_address(notification):
                logger.info(
                    "No deliverable address for user %s, notification %s left to the dispatcher",
                    notification.user_id,
                    notification.id,
                )
                return result

            if as_naive_utc(notification.scheduled_time) <= now:
                result.claimed = await store.claim(notification.id, now)
                if not result.claimed:
                    logger.info("Notification %s already claimed, skipping instant delivery", notification.id)
                    return result
                notification = await store.get(notification.id) or notification
                result.notification = notification

            result.outcomes = await deliver_to_channels(self.channels, notification, DeliveryKind.INSTANT)

        logger.info(
            "Instant delivery of notification %s to user %s (claimed=%s): %s",
            notification.id,
            notification.user_id,
            result.claimed,
            ", ".join(f"{o.channel}={o.status.value}" for o in result.outcomes),
        )
        return result

    async def mark_sent(self, notification_id: int) -> bool:
        """Claim a notification outside the dispatch loop."""
        async with self.session_factory() as session:
            return await NotificationStore(session).mark_sent(notification_id)
