"""
Tests for NotificationDispatcher.

Tests the dispatch tick (claim, per-channel isolation, lost races, store
outages), the rule entry points and scheduler lifecycle.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from app.exceptions import StoreUnavailableError
from app.models.meeting import Meeting
from app.models.notification import Notification
from app.models.task import Task
from app.services.delivery_channels import BroadcastChannel, PushChannel
from app.services.notification_dispatcher import (
    RULES_JOB_ID,
    TICK_JOB_ID,
    NotificationDispatcher,
)
from app.services.notification_store import NotificationStore
from app.services.push_service import MockPushProvider
from app.utils.clock import utc_now
from tests.doubles import RecordingEmitter
from tests.factories import (
    DueNotificationFactory,
    FutureNotificationFactory,
    OverdueTaskFactory,
    UpcomingMeetingFactory,
    UrgentNotificationFactory,
)


@pytest_asyncio.fixture
async def reminder_type(notification_types):
    return notification_types["reminder"]


async def load(session_factory, notification_id):
    async with session_factory() as session:
        return await session.get(Notification, notification_id)


class TestRunTick:
    """Tests for one dispatch tick."""

    @pytest.mark.asyncio
    async def test_claims_and_delivers_due_notifications(
        self, test_db, session_factory, dispatcher, push_provider, push_user, reminder_type
    ):
        store = NotificationStore(test_db)
        due = await store.create(DueNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))
        future = await store.create(FutureNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))

        report = await dispatcher.run_tick()

        assert report.fetched == 1
        assert report.claimed == 1
        assert report.outcomes == {"push.delivered": 1}
        assert (await load(session_factory, due.id)).is_sent is True
        assert (await load(session_factory, future.id)).is_sent is False
        assert provider_tokens(push_provider) == [push_user.fcm_token]
        assert dispatcher.last_check_time == report.started_at

    @pytest.mark.asyncio
    async def test_delivers_in_priority_order(self, test_db, dispatcher, push_provider, push_user, reminder_type):
        store = NotificationStore(test_db)
        low = await store.create(DueNotificationFactory(user_id=push_user.id, type_id=reminder_type.id, priority="low"))
        urgent = await store.create(UrgentNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))

        await dispatcher.run_tick()

        sent_ids = [m["data"]["notification_id"] for m in push_provider.sent_messages]
        assert sent_ids == [str(urgent.id), str(low.id)]

    @pytest.mark.asyncio
    async def test_second_tick_does_not_redeliver(self, test_db, dispatcher, push_provider, push_user, reminder_type):
        await NotificationStore(test_db).create(DueNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))

        await dispatcher.run_tick()
        report = await dispatcher.run_tick()

        assert report.fetched == 0
        assert len(push_provider.sent_messages) == 1

    @pytest.mark.asyncio
    async def test_missing_token_still_claims(self, test_db, session_factory, test_user, reminder_type):
        """No push token and no realtime transport: both skip, the claim stands."""
        dispatcher = NotificationDispatcher(session_factory, [PushChannel(MockPushProvider())])
        notification = await NotificationStore(test_db).create(
            DueNotificationFactory(user_id=test_user.id, type_id=reminder_type.id)
        )

        report = await dispatcher.run_tick()

        assert report.claimed == 1
        assert report.outcomes == {"push.skipped": 1}
        assert (await load(session_factory, notification.id)).is_sent is True

    @pytest.mark.asyncio
    async def test_channel_failure_is_isolated(self, test_db, session_factory, push_user, reminder_type):
        """Push fails for N; broadcast still runs for N and N+1 is still processed."""
        failing = MockPushProvider()
        failing.send = AsyncMock(side_effect=[RuntimeError("provider down"), "projects/mock/messages/2"])
        emitter = RecordingEmitter(online_rooms={f"user:{push_user.id}"})
        dispatcher = NotificationDispatcher(
            session_factory, [PushChannel(failing), BroadcastChannel(emitter)]
        )
        store = NotificationStore(test_db)
        first = await store.create(UrgentNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))
        second = await store.create(DueNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))

        report = await dispatcher.run_tick()

        assert report.claimed == 2
        assert report.failures == 0
        assert report.outcomes["push.failed"] == 1
        assert report.outcomes["push.delivered"] == 1
        assert report.outcomes["broadcast.delivered"] == 2
        assert [e["payload"]["id"] for e in emitter.emitted] == [first.id, second.id]
        assert (await load(session_factory, first.id)).is_sent is True

    @pytest.mark.asyncio
    async def test_broadcast_payload_reflects_claim(self, test_db, session_factory, push_user, reminder_type):
        emitter = RecordingEmitter(online_rooms={f"user:{push_user.id}"})
        dispatcher = NotificationDispatcher(
            session_factory, [PushChannel(MockPushProvider()), BroadcastChannel(emitter)]
        )
        await NotificationStore(test_db).create(DueNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))
        now = utc_now()

        report = await dispatcher.run_tick(now)

        assert report.claimed == 1
        payload = emitter.emitted[0]["payload"]
        assert payload["is_sent"] is True
        assert payload["sent_at"] == now.isoformat()

    @pytest.mark.asyncio
    async def test_raising_channel_does_not_stop_batch(self, test_db, session_factory, push_user, reminder_type):
        class ExplodingChannel(PushChannel):
            name = "exploding"

            async def deliver(self, notification, address, kind=None):
                raise ValueError("bad row")

        provider = MockPushProvider()
        dispatcher = NotificationDispatcher(
            session_factory, [ExplodingChannel(provider), PushChannel(provider)]
        )
        store = NotificationStore(test_db)
        for _ in range(2):
            await store.create(DueNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))

        report = await dispatcher.run_tick()

        assert report.claimed == 2
        assert report.outcomes == {"exploding.failed": 2, "push.delivered": 2}

    @pytest.mark.asyncio
    async def test_lost_race_is_skipped_silently(
        self, test_db, session_factory, dispatcher, push_provider, push_user, reminder_type
    ):
        notification = await NotificationStore(test_db).create(
            DueNotificationFactory(user_id=push_user.id, type_id=reminder_type.id)
        )
        original_fetch = NotificationStore.fetch_due

        async def fetch_then_lose_race(store, now=None):
            rows = await original_fetch(store, now)
            # Another process claims between our fetch and our claim
            async with session_factory() as other:
                assert await NotificationStore(other).claim(notification.id) is True
            return rows

        with patch.object(NotificationStore, "fetch_due", fetch_then_lose_race):
            report = await dispatcher.run_tick()

        assert report.fetched == 1
        assert report.claimed == 0
        assert report.lost_races == 1
        assert report.failures == 0
        assert push_provider.sent_messages == []

    @pytest.mark.asyncio
    async def test_concurrent_ticks_deliver_once(self, test_db, session_factory, push_user, reminder_type):
        """Two dispatchers (two processes) against one store."""
        provider = MockPushProvider()
        first = NotificationDispatcher(session_factory, [PushChannel(provider)])
        second = NotificationDispatcher(session_factory, [PushChannel(provider)])
        store = NotificationStore(test_db)
        for _ in range(3):
            await store.create(DueNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))

        reports = await asyncio.gather(first.run_tick(), second.run_tick())

        assert sum(r.claimed for r in reports) == 3
        assert len(provider.sent_messages) == 3
        ids = [m["data"]["notification_id"] for m in provider.sent_messages]
        assert len(set(ids)) == 3

    @pytest.mark.asyncio
    async def test_store_unavailable_skips_tick(self, dispatcher):
        with patch.object(
            NotificationStore, "fetch_due", AsyncMock(side_effect=StoreUnavailableError("fetch_due failed"))
        ):
            report = await dispatcher.run_tick()

        assert report.skipped is True
        assert report.fetched == 0
        assert dispatcher.last_check_time is None

    @pytest.mark.asyncio
    async def test_store_outage_mid_batch_stops_tick(
        self, test_db, dispatcher, push_provider, push_user, reminder_type
    ):
        store = NotificationStore(test_db)
        for _ in range(2):
            await store.create(DueNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))

        with patch.object(
            NotificationStore, "claim", AsyncMock(side_effect=StoreUnavailableError("claim failed"))
        ):
            report = await dispatcher.run_tick()

        assert report.skipped is True
        assert report.failures == 1
        assert push_provider.sent_messages == []

        # Next tick proceeds independently
        report = await dispatcher.run_tick()
        assert report.claimed == 2


def provider_tokens(provider):
    return [m["token"] for m in provider.sent_messages]


class TestRules:
    """Tests for the rule entry points."""

    @pytest.mark.asyncio
    async def test_check_upcoming_meetings(self, test_db, session_factory, dispatcher, test_user):
        test_db.add(Meeting(**UpcomingMeetingFactory(organizer_id=test_user.id)))
        await test_db.commit()

        result = await dispatcher.check_upcoming_meetings()

        assert result.created == 1

    @pytest.mark.asyncio
    async def test_check_overdue_tasks(self, test_db, session_factory, dispatcher, test_user):
        test_db.add(Task(**OverdueTaskFactory(user_id=test_user.id)))
        await test_db.commit()

        first = await dispatcher.check_overdue_tasks()
        second = await dispatcher.check_overdue_tasks()

        assert first.created == 1
        assert second.created == 0

    @pytest.mark.asyncio
    async def test_derived_notification_is_dispatched_next_tick(
        self, test_db, session_factory, dispatcher, push_provider, push_user
    ):
        test_db.add(Task(**OverdueTaskFactory(user_id=push_user.id)))
        await test_db.commit()

        await dispatcher.run_rules()
        report = await dispatcher.run_tick(utc_now() + timedelta(seconds=1))

        assert report.claimed == 1
        sent = push_provider.sent_messages[0]
        assert sent["data"]["type"] == "SYNC"
        assert sent["priority"] == "high"

    @pytest.mark.asyncio
    async def test_run_rules_survives_store_outage(self, dispatcher):
        with patch.object(
            NotificationStore,
            "get_or_create_type",
            AsyncMock(side_effect=StoreUnavailableError("down")),
        ), patch.object(
            dispatcher.meeting_rule, "candidates", AsyncMock(return_value=[object()])
        ), patch.object(
            dispatcher.task_rule, "candidates", AsyncMock(return_value=[object()])
        ):
            results = await dispatcher.run_rules()

        assert [r.skipped for r in results] == [True, True]


async def wait_for_first_tick(dispatcher, timeout=5):
    async def poll():
        while dispatcher.last_check_time is None:
            await asyncio.sleep(0.05)

    await asyncio.wait_for(poll(), timeout)


class TestLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_runs_first_tick_and_schedules_jobs(
        self, test_db, dispatcher, push_provider, push_user, reminder_type
    ):
        await NotificationStore(test_db).create(DueNotificationFactory(user_id=push_user.id, type_id=reminder_type.id))

        dispatcher.start()
        try:
            assert dispatcher.is_running is True
            job_ids = {job["id"] for job in dispatcher.get_status()["jobs"]}
            assert job_ids == {TICK_JOB_ID, RULES_JOB_ID}

            await wait_for_first_tick(dispatcher)
        finally:
            dispatcher.stop()

        assert dispatcher.is_running is False
        assert len(push_provider.sent_messages) == 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, test_db, dispatcher):
        dispatcher.start()
        scheduler = dispatcher._scheduler
        dispatcher.start()
        try:
            assert dispatcher._scheduler is scheduler
            await wait_for_first_tick(dispatcher)
        finally:
            dispatcher.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, dispatcher):
        dispatcher.stop()
        assert dispatcher.is_running is False

    @pytest.mark.asyncio
    async def test_status_reports_channels(self, dispatcher):
        status = dispatcher.get_status()

        assert status["running"] is False
        assert status["channels"] == ["push"]
        assert status["last_check_time"] is None
