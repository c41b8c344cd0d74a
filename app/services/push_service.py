"""
Push Delivery Providers

Firebase Cloud Messaging is the production provider. The Admin SDK is
synchronous, so each send runs in a worker thread to keep the event loop
free for the dispatcher and request handlers.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import firebase_admin
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import FirebaseError

from app.exceptions import PushProviderError

logger = logging.getLogger(__name__)


def mask_token(token: Optional[str]) -> str:
    """Loggable form of a device token."""
    if not token:
        return "<none>"
    return f"...{token[-6:]}"


class PushProvider(ABC):
    """Sends one message to one device token."""

    @abstractmethod
    async def send(
        self,
        token: str,
        *,
        notification: dict[str, str],
        data: dict[str, str],
        priority: str,
        channel_id: str,
        sound: Optional[str] = None,
    ) -> str:
        """Send a message and return the provider message id.

        Raises PushProviderError when the provider rejects the message.
        """


class FirebasePushProvider(PushProvider):
    """Push provider backed by the Firebase Admin SDK."""

    APP_NAME = "workdesk-push"

    def __init__(self, credentials_path: str):
        self.credentials_path = credentials_path
        self._app: Optional[firebase_admin.App] = None

    def _get_app(self) -> firebase_admin.App:
        # Initialize Firebase Admin only once per process
        if self._app is None:
            try:
                self._app = firebase_admin.get_app(self.APP_NAME)
            except ValueError:
                cred = credentials.Certificate(self.credentials_path)
                self._app = firebase_admin.initialize_app(cred, name=self.APP_NAME)
                logger.info("Firebase Admin initialized")
        return self._app

    def _send_sync(self, message: messaging.Message) -> str:
        return messaging.send(message, app=self._get_app())

    async def send(
        self,
        token: str,
        *,
        notification: dict[str, str],
        data: dict[str, str],
        priority: str,
        channel_id: str,
        sound: Optional[str] = None,
    ) -> str:
        message = messaging.Message(
            token=token,
            notification=messaging.Notification(
                title=notification.get("title"),
                body=notification.get("body"),
            ),
            data=data,
            android=messaging.AndroidConfig(
                priority=priority,
                notification=messaging.AndroidNotification(
                    channel_id=channel_id,
                    sound=sound,
                ),
            ),
        )

        try:
            return await asyncio.to_thread(self._send_sync, message)
        except FirebaseError as exc:
            raise PushProviderError(f"FCM rejected message: {exc}", code=exc.code) from exc
        except (ValueError, OSError) as exc:
            # Bad credentials file or malformed message
            raise PushProviderError(f"FCM send failed: {exc}") from exc


class MockPushProvider(PushProvider):
    """Records messages instead of sending them."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.fail_with = fail_with
        self._sent_messages: list[dict] = []

    @property
    def sent_messages(self) -> list[dict]:
        return list(self._sent_messages)

    async def send(
        self,
        token: str,
        *,
        notification: dict[str, str],
        data: dict[str, str],
        priority: str,
        channel_id: str,
        sound: Optional[str] = None,
    ) -> str:
        if self.fail_with is not None:
            raise self.fail_with

        message_id = f"projects/mock/messages/{len(self._sent_messages) + 1}"
        self._sent_messages.append({
            "token": token,
            "notification": dict(notification),
            "data": dict(data),
            "priority": priority,
            "channel_id": channel_id,
            "sound": sound,
            "message_id": message_id,
        })
        logger.info("Mock push sent to %s", mask_token(token))
        return message_id


def build_push_provider(settings) -> Optional[PushProvider]:
    """Provider for the configured credentials, or None when push is not set up."""
    if settings.FIREBASE_CREDENTIALS_PATH:
        return FirebasePushProvider(settings.FIREBASE_CREDENTIALS_PATH)
    logger.warning("Firebase credentials not configured; push delivery disabled")
    return None
