"""
Tests for NotificationService (creation-time delivery).
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from app.models.notification import Notification
from app.services.delivery_channels import BroadcastChannel, DeliveryStatus, PushChannel
from app.services.notification_dispatcher import NotificationDispatcher
from app.services.notification_service import NotificationService
from app.services.notification_store import NotificationStore
from app.services.push_service import MockPushProvider
from app.utils.clock import utc_now
from tests.doubles import RecordingEmitter
from tests.factories import NotificationFactory


@pytest_asyncio.fixture
async def reminder_type(notification_types):
    return notification_types["reminder"]


async def load(session_factory, notification_id):
    async with session_factory() as session:
        return await session.get(Notification, notification_id)


class TestInstantCreate:
    """Tests for create_notification."""

    @pytest.mark.asyncio
    async def test_due_notification_is_claimed_and_delivered(
        self, session_factory, notification_service, dispatcher, push_provider, push_user, reminder_type
    ):
        now = utc_now()
        fields = NotificationFactory(
            user_id=push_user.id, type_id=reminder_type.id, scheduled_time=now - timedelta(seconds=1),
        )

        result = await notification_service.create_notification(fields, now=now)

        assert result.claimed is True
        assert [o.status for o in result.outcomes] == [DeliveryStatus.DELIVERED]
        assert push_provider.sent_messages[0]["data"]["type"] == "INSTANT"
        stored = await load(session_factory, result.notification.id)
        assert stored.is_sent is True

        # The dispatch loop no longer sees it
        async with session_factory() as session:
            assert await NotificationStore(session).fetch_due(now + timedelta(seconds=5)) == []
        report = await dispatcher.run_tick(now + timedelta(seconds=5))
        assert report.fetched == 0
        assert len(push_provider.sent_messages) == 1

    @pytest.mark.asyncio
    async def test_future_notification_fires_twice(
        self, session_factory, notification_service, dispatcher, push_provider, push_user, reminder_type
    ):
        now = utc_now()
        fields = NotificationFactory(
            user_id=push_user.id, type_id=reminder_type.id, scheduled_time=now + timedelta(hours=1),
        )

        result = await notification_service.create_notification(fields, now=now)

        assert result.claimed is False
        assert [o.status for o in result.outcomes] == [DeliveryStatus.DELIVERED]
        assert (await load(session_factory, result.notification.id)).is_sent is False

        early = await dispatcher.run_tick(now + timedelta(minutes=30))
        assert early.fetched == 0

        due = await dispatcher.run_tick(now + timedelta(hours=1))
        assert due.claimed == 1

        kinds = [m["data"]["type"] for m in push_provider.sent_messages]
        assert kinds == ["INSTANT", "reminder"]

    @pytest.mark.asyncio
    async def test_no_deliverable_address_leaves_notification_unclaimed(
        self, session_factory, notification_service, push_provider, test_user, reminder_type
    ):
        now = utc_now()
        fields = NotificationFactory(user_id=test_user.id, type_id=reminder_type.id, scheduled_time=now)

        result = await notification_service.create_notification(fields, now=now)

        assert result.claimed is False
        assert result.attempted is False
        assert push_provider.sent_messages == []
        assert (await load(session_factory, result.notification.id)).is_sent is False

    @pytest.mark.asyncio
    async def test_live_room_counts_as_address(self, session_factory, test_user, reminder_type):
        emitter = RecordingEmitter(online_rooms={f"user:{test_user.id}"})
        service = NotificationService(
            session_factory, [PushChannel(MockPushProvider()), BroadcastChannel(emitter)]
        )
        now = utc_now()

        result = await service.create_notification(
            NotificationFactory(user_id=test_user.id, type_id=reminder_type.id, scheduled_time=now),
            now=now,
        )

        assert result.claimed is True
        assert {o.channel: o.status for o in result.outcomes} == {
            "push": DeliveryStatus.SKIPPED,
            "broadcast": DeliveryStatus.DELIVERED,
        }
        assert emitter.emitted[0]["payload"]["delivery"] == "instant"

    @pytest.mark.asyncio
    async def test_provider_failure_does_not_fail_creation(self, session_factory, push_user, reminder_type):
        service = NotificationService(
            session_factory, [PushChannel(MockPushProvider(fail_with=RuntimeError("fcm down")))]
        )
        now = utc_now()

        result = await service.create_notification(
            NotificationFactory(user_id=push_user.id, type_id=reminder_type.id, scheduled_time=now),
            now=now,
        )

        assert result.notification.id is not None
        assert result.claimed is True
        assert result.outcomes[0].status is DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_instant_path_racing_dispatcher_delivers_once(
        self, session_factory, push_user, reminder_type
    ):
        provider = MockPushProvider()
        channels = [PushChannel(provider)]
        service = NotificationService(session_factory, channels)
        dispatcher = NotificationDispatcher(session_factory, channels)
        now = utc_now()

        result = await service.create_notification(
            NotificationFactory(user_id=push_user.id, type_id=reminder_type.id, scheduled_time=now),
            now=now,
        )
        report = await dispatcher.run_tick(now)

        assert result.claimed is True
        assert report.claimed == 0
        assert len(provider.sent_messages) == 1

    @pytest.mark.asyncio
    async def test_mark_sent(self, test_db, notification_service, test_user, reminder_type):
        notification = await NotificationStore(test_db).create(
            NotificationFactory(user_id=test_user.id, type_id=reminder_type.id)
        )

        assert await notification_service.mark_sent(notification.id) is True
        assert await notification_service.mark_sent(notification.id) is False
