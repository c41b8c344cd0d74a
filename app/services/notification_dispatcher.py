"""
Notification Dispatcher

Background poller that delivers due notifications. Two APScheduler jobs
run per process:

- the dispatch tick (every few seconds): fetch due notifications, claim
  each one, deliver every claimed notification through every channel;
- the rule job (every few minutes): evaluate the derivation rules, whose
  output is picked up by the next tick.

Any number of processes may run the same dispatcher against one database.
Exactly-once dispatch rests on the store's conditional claim; there is no
leader election and no in-process lock around the batch.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.exceptions import StoreUnavailableError
from app.models.notification import Notification
from app.services.delivery_channels import (
    DeliveryChannel,
    DeliveryKind,
    DeliveryOutcome,
)
from app.services.notification_rules import (
    DerivationRule,
    OverdueTaskRule,
    RuleResult,
    UpcomingMeetingRule,
)
from app.services.notification_store import NotificationStore
from app.utils.clock import utc_now

logger = logging.getLogger(__name__)

TICK_JOB_ID = "notification_dispatch_tick"
RULES_JOB_ID = "notification_derivation_rules"


@dataclass
class TickReport:
    """What one dispatch tick did."""

    started_at: datetime
    fetched: int = 0
    claimed: int = 0
    lost_races: int = 0
    failures: int = 0
    skipped: bool = False
    outcomes: Counter = field(default_factory=Counter)

    def record(self, outcome: DeliveryOutcome) -> None:
        self.outcomes[f"{outcome.channel}.{outcome.status.value}"] += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "skipped": self.skipped,
            "fetched": self.fetched,
            "claimed": self.claimed,
            "lost_races": self.lost_races,
            "failures": self.failures,
            "outcomes": dict(self.outcomes),
        }


async def deliver_to_channels(
    channels: Sequence[DeliveryChannel],
    notification: Notification,
    kind: DeliveryKind,
) -> list[DeliveryOutcome]:
    """Deliver through every channel. A failing channel never stops the next one."""
    outcomes = []
    for channel in channels:
        try:
            address = channel.resolve_address(notification)
            outcome = await channel.deliver(notification, address, kind)
        except Exception as e:
            logger.error(
                "Channel %s raised for notification %s: %s",
                channel.name,
                notification.id,
                e,
                exc_info=True,
            )
            outcome = DeliveryOutcome.failed(channel.name, e)
        outcomes.append(outcome)
    return outcomes


class NotificationDispatcher:
    """Polls the store for due notifications and delivers them."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        channels: Sequence[DeliveryChannel],
        *,
        poll_interval_seconds: int = 3,
        rules_interval_minutes: int = 5,
        meeting_rule: Optional[UpcomingMeetingRule] = None,
        task_rule: Optional[OverdueTaskRule] = None,
    ):
        self.session_factory = session_factory
        self.channels = list(channels)
        self.poll_interval_seconds = poll_interval_seconds
        self.rules_interval_minutes = rules_interval_minutes
        self.meeting_rule = meeting_rule or UpcomingMeetingRule()
        self.task_rule = task_rule or OverdueTaskRule()

        self.last_check_time: Optional[datetime] = None
        self.last_report: Optional[TickReport] = None
        self._scheduler: Optional[AsyncIOScheduler] = None

    @classmethod
    def from_settings(cls, session_factory, channels, settings) -> "NotificationDispatcher":
        return cls(
            session_factory,
            channels,
            poll_interval_seconds=settings.NOTIFY_POLL_INTERVAL_SECONDS,
            rules_interval_minutes=settings.NOTIFY_RULES_INTERVAL_MINUTES,
            meeting_rule=UpcomingMeetingRule.from_settings(settings),
            task_rule=OverdueTaskRule.from_settings(settings),
        )

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Schedule the tick and rule jobs. The first tick runs immediately.

        Must be called from inside the running event loop.
        """
        if self.is_running:
            logger.debug("Notification dispatcher already running")
            return

        scheduler = AsyncIOScheduler(timezone=timezone.utc)

        # Overlapping ticks are dropped, not queued
        scheduler.add_job(
            self.run_tick,
            IntervalTrigger(seconds=self.poll_interval_seconds),
            id=TICK_JOB_ID,
            name="Dispatch due notifications",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        scheduler.add_job(
            self.run_rules,
            IntervalTrigger(minutes=self.rules_interval_minutes),
            id=RULES_JOB_ID,
            name="Evaluate notification rules",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Notification dispatcher started (tick every %ss, rules every %s min, channels: %s)",
            self.poll_interval_seconds,
            self.rules_interval_minutes,
            ", ".join(channel.name for channel in self.channels) or "none",
        )

    def stop(self) -> None:
        """Stop scheduling. In-flight jobs are abandoned, not awaited."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Notification dispatcher stopped")
        self._scheduler = None

    # ------------------------------------------------------------------
    # Dispatch tick
    # ------------------------------------------------------------------

    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        """One fetch -> claim -> deliver pass over the due notifications."""
        now = now or utc_now()
        report = TickReport(started_at=now)

        async with self.session_factory() as session:
            store = NotificationStore(session)
            try:
                due = await store.fetch_due(now)
            except StoreUnavailableError as e:
                logger.warning("Notification store unavailable, skipping tick: %s", e)
                report.skipped = True
                self.last_report = report
                return report

            report.fetched = len(due)
            due_ids = [notification.id for notification in due]
            by_id = {notification.id: notification for notification in due}
            reload_rows = False

            for notification_id in due_ids:
                try:
                    if reload_rows:
                        notification = await store.get(notification_id)
                        if notification is None:
                            continue
                    else:
                        notification = by_id[notification_id]

                    if not await store.claim(notification_id, now):
                        # Claimed by the instant path or another tick
                        report.lost_races += 1
                        continue

                    report.claimed += 1
                    # The claim is a Core UPDATE; reload so is_sent/sent_at reach the channels
                    notification = await store.get(notification_id) or notification
                    outcomes =await deliver_to_channels(self.channels, notification, DeliveryKind.SCHEDULED)
                    for outcome in outcomes:
                        report.record(outcome)
                except StoreUnavailableError as e:
                    logger.warning(
                        "Notification store became unavailable at notification %s, skipping rest of tick: %s",
                        notification_id,
                        e,
                    )
                    report.failures += 1
                    report.skipped = True
                    break
                except Exception as e:
                    report.failures += 1
                    logger.error("Error dispatching notification %s: %s", notification_id, e, exc_info=True)
                    await session.rollback()
                    reload_rows = True

        if not report.skipped:
            self.last_check_time = now
        self.last_report = report

        if report.claimed or report.failures:
            logger.info(
                "Dispatch tick: fetched=%d claimed=%d lost_races=%d failures=%d",
                report.fetched,
                report.claimed,
                report.lost_races,
                report.failures,
            )
        return report

    # ------------------------------------------------------------------
    # Derivation rules
    # ------------------------------------------------------------------

    async def _evaluate(self, rule: DerivationRule, now: Optional[datetime]) -> RuleResult:
        now = now or utc_now()
        async with self.session_factory() as session:
            return await rule.evaluate(session, now)

    async def check_upcoming_meetings(self, now: Optional[datetime] = None) -> RuleResult:
        """Create reminders for scheduled meetings starting soon."""
        return await self._evaluate(self.meeting_rule, now)

    async def check_overdue_tasks(self, now: Optional[datetime] = None) -> RuleResult:
        """Create alerts for open tasks past their due date."""
        return await self._evaluate(self.task_rule, now)

    async def run_rules(self, now: Optional[datetime] = None) -> list[RuleResult]:
        """Evaluate every rule; one rule failing does not prevent the others."""
        results = []
        for rule in (self.meeting_rule, self.task_rule):
            try:
                results.append(await self._evaluate(rule, now))
            except StoreUnavailableError as e:
                logger.warning("Notification store unavailable, skipping %s: %s", rule.name, e)
                results.append(RuleResult(rule=rule.name, skipped=True))
            except Exception as e:
                logger.error("Error evaluating %s: %s", rule.name, e, exc_info=True)
                results.append(RuleResult(rule=rule.name, errors=1))
        return results

    def get_status(self) -> dict[str, Any]:
        jobs = []
        if self._scheduler is not None:
            for job in self._scheduler.get_jobs():
                jobs.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                })
        return {
            "running": self.is_running,
            "last_check_time": self.last_check_time.isoformat() if self.last_check_time else None,
            "poll_interval_seconds": self.poll_interval_seconds,
            "rules_interval_minutes": self.rules_interval_minutes,
            "channels": [channel.name for channel in self.channels],
            "last_tick": self.last_report.as_dict() if self.last_report else None,
            "jobs": jobs,
        }
