"""
Notification Derivation Rules

Rules synthesize notifications from the state of other entities:

- UpcomingMeetingRule: scheduled meetings starting within the lookahead
  window notify their organizer (high priority).
- OverdueTaskRule: open tasks past their due date notify their owner
  (urgent priority).

Both rules suppress repeats per entity for a window (one hour for
meetings, one calendar day for tasks by default) and re-notify once the
window has passed while the condition persists.

Suppression is checked twice:
1. A scan of recent notifications of the rule's type, correlated through
   the entity id stored in the notification metadata.
2. A unique ``dedup_key`` of ``<rule>:<entity id>:<window bucket>``, which
   turns a concurrent duplicate insert from an overlapping tick into a
   no-op. Two inserts that straddle a bucket boundary faster than the scan
   can observe each other can still both land.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, date
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import StoreUnavailableError
from app.models.meeting import Meeting, MeetingStatus
from app.models.notification import (
    MEETING_TYPE,
    TASK_DEADLINE_TYPE,
    NotificationPriority,
)
from app.models.task import Task, CLOSED_TASK_STATUSES
from app.services.notification_store import NotificationStore

logger = logging.getLogger(__name__)


@dataclass
class RuleResult:
    rule: str
    candidates: int = 0
    created: int = 0
    suppressed: int = 0
    errors: int = 0
    # True when the store could not be reached and the rule did not run
    skipped: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "skipped": self.skipped,
            "candidates": self.candidates,
            "created": self.created,
            "suppressed": self.suppressed,
            "errors": self.errors,
        }


class DerivationRule(ABC):
    """Template for a windowed, idempotent derivation rule."""

    name: str
    type_code: str
    type_name: str
    metadata_key: str

    @abstractmethod
    async def candidates(self, session: AsyncSession, now: datetime) -> Sequence[Any]:
        """Entities whose state currently calls for a notification."""

    @abstractmethod
    def window_start(self, now: datetime) -> datetime:
        """Earliest created_at of a notification that still suppresses a repeat."""

    @abstractmethod
    def bucket(self, now: datetime) -> str:
        """Identifier of the suppression window containing ``now``."""

    @abstractmethod
    def build_fields(self, entity: Any, type_id: int, now: datetime) -> dict[str, Any]:
        """Notification fields for ``entity``."""

    def dedup_key(self, entity_id: Any, now: datetime) -> str:
        return f"{self.name}:{entity_id}:{self.bucket(now)}"

    async def evaluate(self, session: AsyncSession, now: datetime) -> RuleResult:
        """Create missing notifications for every current candidate.

        Store unavailability propagates; any other per-entity failure is
        logged and the rule moves on to the next candidate.
        """
        store = NotificationStore(session)
        result = RuleResult(rule=self.name)

        entities = await self.candidates(session, now)
        result.candidates = len(entities)
        if not entities:
            return result

        notification_type = await store.get_or_create_type(self.type_code, self.type_name)
        type_id = notification_type.id
        already_notified = await store.recent_entity_ids(
            type_id=type_id,
            metadata_key=self.metadata_key,
            since=self.window_start(now),
        )

        # A rollback expires loaded entities, so read everything up front
        pending: list[tuple[str, dict[str, Any]]] = []
        for entity in entities:
            entity_id = str(entity.id)
            if entity_id in already_notified:
                result.suppressed += 1
                continue
            try:
                fields = self.build_fields(entity, type_id, now)
            except Exception:
                result.errors += 1
                logger.error("%s could not build notification for %s", self.name, entity_id, exc_info=True)
                continue
            fields["dedup_key"] = self.dedup_key(entity_id, now)
            pending.append((entity_id, fields))

        for entity_id, fields in pending:
            if entity_id in already_notified:
                result.suppressed += 1
                continue

            try:
                created = await store.create_if_absent(fields)
            except StoreUnavailableError:
                raise
            except Exception:
                result.errors += 1
                logger.error("%s failed for entity %s", self.name, entity_id, exc_info=True)
                await session.rollback()
                continue

            if created is None:
                result.suppressed += 1
            else:
                result.created += 1
                already_notified.add(entity_id)

        if result.created:
            logger.info("%s: created %d notification(s)", self.name, result.created)
        return result


def _epoch_seconds(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class UpcomingMeetingRule(DerivationRule):
    name = "upcoming_meeting"
    type_code = MEETING_TYPE
    type_name = "Meeting"
    metadata_key = "meeting_id"

    def __init__(
        self,
        lookahead: timedelta = timedelta(hours=1),
        suppression_window: timedelta = timedelta(hours=1),
    ):
        self.lookahead = lookahead
        self.suppression_window = suppression_window

    @classmethod
    def from_settings(cls, settings) -> "UpcomingMeetingRule":
        return cls(
            lookahead=timedelta(minutes=settings.MEETING_LOOKAHEAD_MINUTES),
            suppression_window=timedelta(minutes=settings.MEETING_SUPPRESSION_MINUTES),
        )

    async def candidates(self, session: AsyncSession, now: datetime) -> Sequence[Meeting]:
        result = await session.execute(
            select(Meeting)
            .where(
                Meeting.status == MeetingStatus.SCHEDULED.value,
                Meeting.meeting_time >= now,
                Meeting.meeting_time <= now + self.lookahead,
            )
            .order_by(Meeting.meeting_time.asc())
        )
        return list(result.scalars().all())

    def window_start(self, now: datetime) -> datetime:
        return now - self.suppression_window

    def bucket(self, now: datetime) -> str:
        window = max(int(self.suppression_window.total_seconds()), 1)
        return str(_epoch_seconds(now) // window)

    def build_fields(self, meeting: Meeting, type_id: int, now: datetime) -> dict[str, Any]:
        minutes = max(int((meeting.meeting_time - now).total_seconds() // 60), 0)
        return {
            "user_id": meeting.organizer_id,
            "type_id": type_id,
            "title": "🕐 Upcoming meeting",
            "message": f'"{meeting.title}" starts in {minutes} minutes',
            "scheduled_time": now,
            "priority": NotificationPriority.HIGH,
            "action_url": f"/meetings/{meeting.id}",
            "metadata": {
                "meeting_id": meeting.id,
                "meeting_time": meeting.meeting_time.isoformat(),
                "location": meeting.location,
            },
            "created_at": now,
        }


class OverdueTaskRule(DerivationRule):
    name = "overdue_task"
    type_code = TASK_DEADLINE_TYPE
    type_name = "Task deadline"
    metadata_key = "task_id"

    def __init__(self, suppression_days: int = 1):
        self.suppression_days = max(suppression_days, 1)

    @classmethod
    def from_settings(cls, settings) -> "OverdueTaskRule":
        return cls(suppression_days=settings.TASK_SUPPRESSION_DAYS)

    async def candidates(self, session: AsyncSession, now: datetime) -> Sequence[Task]:
        result = await session.execute(
            select(Task)
            .where(
                Task.due_date < now,
                Task.status.notin_(CLOSED_TASK_STATUSES),
            )
            .order_by(Task.due_date.asc())
        )
        return list(result.scalars().all())

    def _window_date(self, now: datetime) -> date:
        # Calendar-day windows, aligned so a one-day window is "today"
        ordinal = now.date().toordinal()
        return date.fromordinal(ordinal - ordinal % self.suppression_days)

    def window_start(self, now: datetime) -> datetime:
        return datetime.combine(self._window_date(now), datetime.min.time())

    def bucket(self, now: datetime) -> str:
        return self._window_date(now).isoformat()

    def build_fields(self, task: Task, type_id: int, now: datetime) -> dict[str, Any]:
        return {
            "user_id": task.user_id,
            "type_id": type_id,
            "title": "⚠️ Overdue task",
            "message": f'"{task.title}" is overdue',
            "scheduled_time": now,
            "priority": NotificationPriority.URGENT,
            "action_url": f"/tasks/{task.id}",
            "metadata": {
                "task_id": task.id,
                "due_date": task.due_date.isoformat() if task.due_date else None,
            },
            "created_at": now,
        }
