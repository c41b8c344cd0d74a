"""
Delivery Channels

A channel turns a claimed notification into a message for one recipient
address. Two channels exist:

- PushChannel: addressed by the user's FCM token, fire-and-forget.
- BroadcastChannel: addressed by the user's realtime room; only built when
  a live websocket transport is attached to the process.

Channels never raise. Every attempt ends in a DeliveryOutcome so that a
failure on one channel cannot block another channel or the rest of a
dispatch batch, and never affects the claim that already happened.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

from app.models.notification import Notification, SYNC_TYPES, SYSTEM_TYPE
from app.services.push_service import PushProvider, mask_token

logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"


class DeliveryKind(str, Enum):
    """Why the delivery happens: the scheduled reminder or the creation-time echo."""

    SCHEDULED = "scheduled"
    INSTANT = "instant"


@dataclass(frozen=True)
class DeliveryOutcome:
    channel: str
    status: DeliveryStatus
    reason: Optional[str] = None
    error: Optional[str] = None
    reference: Optional[str] = None

    @classmethod
    def delivered(cls, channel: str, reference: Optional[str] = None) -> "DeliveryOutcome":
        return cls(channel=channel, status=DeliveryStatus.DELIVERED, reference=reference)

    @classmethod
    def skipped(cls, channel: str, reason: str) -> "DeliveryOutcome":
        return cls(channel=channel, status=DeliveryStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, channel: str, error: BaseException) -> "DeliveryOutcome":
        return cls(
            channel=channel,
            status=DeliveryStatus.FAILED,
            error=f"{type(error).__name__}: {error}",
        )

    def as_dict(self) -> dict[str, Any]:
        data = {"channel": self.channel, "status": self.status.value}
        if self.reason:
            data["reason"] = self.reason
        if self.error:
            data["error"] = self.error
        return data


def serialize_notification(notification: Notification) -> dict[str, Any]:
    """JSON-safe representation shared by realtime events and API responses."""
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "type_id": notification.type_id,
        "type_code": notification.type_code,
        "title": notification.title,
        "message": notification.message,
        "priority": notification.priority,
        "scheduled_time": notification.scheduled_time.isoformat() if notification.scheduled_time else None,
        "sent_at": notification.sent_at.isoformat() if notification.sent_at else None,
        "is_sent": bool(notification.is_sent),
        "is_read": bool(notification.is_read),
        "action_url": notification.action_url,
        "metadata": notification.extra_data,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


def _metadata_json(notification: Notification) -> str:
    metadata = notification.extra_data
    if metadata is None:
        return "{}"
    if isinstance(metadata, str):
        return metadata
    return json.dumps(metadata, default=str)


def _truncate_utf8(text: str, max_bytes: int) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max(max_bytes, 0)].decode("utf-8", errors="ignore")


class DeliveryChannel(ABC):
    """Common contract for push and realtime delivery."""

    name: str = "channel"

    @abstractmethod
    def resolve_address(self, notification: Notification) -> Optional[str]:
        """Recipient address for this channel, or None when the user has none."""

    def is_addressable(self, address: Optional[str]) -> bool:
        return bool(address)

    @abstractmethod
    async def deliver(
        self,
        notification: Notification,
        address: Optional[str],
        kind: DeliveryKind = DeliveryKind.SCHEDULED,
    ) -> DeliveryOutcome:
        """Attempt delivery. Never raises."""


@dataclass
class PushMessage:
    notification: dict[str, str]
    data: dict[str, str]
    priority: str
    channel_id: str
    sound: Optional[str] = None

    def size_bytes(self) -> int:
        body = {"notification": self.notification, "data": self.data}
        return len(json.dumps(body, ensure_ascii=False).encode("utf-8"))


class PushChannel(DeliveryChannel):
    """Token-addressed push delivery through a PushProvider."""

    name = "push"

    def __init__(
        self,
        provider: Optional[PushProvider],
        *,
        min_token_length: int = 51,
        max_payload_bytes: int = 4000,
        default_channel_id: str = "default",
        instant_channel_id: str = "alarm_channel",
        instant_sound: Optional[str] = "alarm_sound",
    ):
        self.provider = provider
        self.min_token_length = min_token_length
        self.max_payload_bytes = max_payload_bytes
        self.default_channel_id = default_channel_id
        self.instant_channel_id = instant_channel_id
        self.instant_sound = instant_sound

    @classmethod
    def from_settings(cls, provider: Optional[PushProvider], settings) -> "PushChannel":
        return cls(
            provider,
            min_token_length=settings.PUSH_TOKEN_MIN_LENGTH,
            max_payload_bytes=settings.PUSH_MAX_PAYLOAD_BYTES,
            default_channel_id=settings.PUSH_DEFAULT_CHANNEL_ID,
            instant_channel_id=settings.PUSH_INSTANT_CHANNEL_ID,
            instant_sound=settings.PUSH_INSTANT_SOUND,
        )

    def resolve_address(self, notification: Notification) -> Optional[str]:
        user = notification.user
        return user.fcm_token if user is not None else None

    def is_addressable(self, address: Optional[str]) -> bool:
        # Tokens of 50 characters or fewer are placeholders, not FCM registrations
        return bool(address) and len(address.strip()) >= self.min_token_length

    @staticmethod
    def transport_priority(notification: Notification) -> str:
        return "high" if notification.priority_level.is_elevated else "normal"

    def build_message(self, notification: Notification, kind: DeliveryKind) -> PushMessage:
        """Visible notification for background display plus typed data for the app."""
        type_code = notification.type_code or SYSTEM_TYPE
        metadata = _metadata_json(notification)

        if kind is DeliveryKind.INSTANT:
            message = PushMessage(
                notification={
                    "title": f"📢 {notification.title}",
                    "body": notification.message,
                },
                data={
                    "type": "INSTANT",
                    "type_id": str(notification.type_id),
                    "notification_id": str(notification.id),
                    "title": notification.title,
                    "message": notification.message,
                    "scheduled_time": notification.scheduled_time.isoformat()
                    if notification.scheduled_time else "",
                    "priority": notification.priority,
                    "metadata": metadata,
                },
                priority=self.transport_priority(notification),
                channel_id=self.instant_channel_id,
                sound=self.instant_sound,
            )
        else:
            message = PushMessage(
                notification={
                    "title": notification.title,
                    "body": notification.message,
                },
                data={
                    "type": "SYNC" if type_code in SYNC_TYPES else type_code,
                    "entity_type": type_code,
                    "entity_id": str(notification.id),
                    "notification_id": str(notification.id),
                    "priority": notification.priority,
                    "action_url": notification.action_url or "",
                    "metadata": metadata,
                },
                priority=self.transport_priority(notification),
                channel_id=self.default_channel_id,
            )

        return self._fit_payload(message)

    def _fit_payload(self, message: PushMessage) -> PushMessage:
        """Drop metadata, then shorten the body, until the payload fits."""
        if message.size_bytes() <= self.max_payload_bytes:
            return message

        message.data["metadata"] = "{}"
        overflow = message.size_bytes() - self.max_payload_bytes
        if overflow <= 0:
            return message

        for target in (message.notification, message.data):
            key = "body" if target is message.notification else "message"
            if key not in target:
                continue
            text = target[key]
            target[key] = _truncate_utf8(text, len(text.encode("utf-8")) - overflow - 3) + "..."
            overflow = message.size_bytes() - self.max_payload_bytes
            if overflow <= 0:
                break
        return message

    async def deliver(
        self,
        notification: Notification,
        address: Optional[str],
        kind: DeliveryKind = DeliveryKind.SCHEDULED,
    ) -> DeliveryOutcome:
        if not address:
            logger.info("User %s has no push token, skipping push", notification.user_id)
            return DeliveryOutcome.skipped(self.name, "missing push token")
        if not self.is_addressable(address):
            logger.info(
                "User %s push token %s failed sanity check, skipping push",
                notification.user_id,
                mask_token(address),
            )
            return DeliveryOutcome.skipped(self.name, "invalid push token")
        if self.provider is None:
            logger.info("Push provider not configured, skipping notification %s", notification.id)
            return DeliveryOutcome.skipped(self.name, "push provider not configured")

        try:
            message = self.build_message(notification, kind)
            reference = await self.provider.send(
                address,
                notification=message.notification,
                data=message.data,
                priority=message.priority,
                channel_id=message.channel_id,
                sound=message.sound,
            )
        except Exception as e:
            logger.warning(
                "Push delivery failed for notification %s to user %s: %s",
                notification.id,
                notification.user_id,
                e,
            )
            return DeliveryOutcome.failed(self.name, e)

        logger.info(
            "Sent %s push for notification %s to user %s",
            kind.value,
            notification.id,
            notification.user_id,
        )
        return DeliveryOutcome.delivered(self.name, reference)


class RoomEmitter(Protocol):
    """Realtime transport capability: emit an event to every socket in a room."""

    async def emit(self, room: str, event: str, payload: dict) -> int:
        ...

    def has_room(self, room: str) -> bool:
        ...


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


class BroadcastChannel(DeliveryChannel):
    """Room-addressed realtime delivery over an attached websocket transport."""

    name = "broadcast"
    EVENT_NAME = "notification.created"

    def __init__(self, transport: RoomEmitter):
        self.transport = transport

    def resolve_address(self, notification: Notification) -> Optional[str]:
        if notification.user_id is None:
            return None
        return user_room(notification.user_id)

    def is_addressable(self, address: Optional[str]) -> bool:
        return bool(address) and self.transport.has_room(address)

    async def deliver(
        self,
        notification: Notification,
        address: Optional[str],
        kind: DeliveryKind = DeliveryKind.SCHEDULED,
    ) -> DeliveryOutcome:
        if not address:
            return DeliveryOutcome.skipped(self.name, "no room for recipient")

        payload = serialize_notification(notification)
        payload["delivery"] = kind.value

        try:
            reached = await self.transport.emit(address, self.EVENT_NAME, payload)
        except Exception as e:
            logger.warning("Broadcast of notification %s to %s failed: %s", notification.id, address, e)
            return DeliveryOutcome.failed(self.name, e)

        if not reached:
            logger.info("No live connection in %s, skipping broadcast", address)
            return DeliveryOutcome.skipped(self.name, "no live connection")

        return DeliveryOutcome.delivered(self.name, f"{reached} connection(s)")


def build_channels(
    settings,
    push_provider: Optional[PushProvider],
    transport: Optional[RoomEmitter] = None,
) -> Sequence[DeliveryChannel]:
    """Push is always configured; broadcast only when a transport is attached."""
    channels: list[DeliveryChannel] = [PushChannel.from_settings(push_provider, settings)]
    if transport is not None:
        channels.append(BroadcastChannel(transport))
    return channels
