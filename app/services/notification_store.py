"""
Notification Store

Reads and writes notification rows. The persistent store is the only
shared mutable resource of the notification subsystem, so every
coordination decision (who delivers a due notification, whether a
derived notification already exists) is made here with a conditional
write rather than an in-process lock.

The claim is a single conditional UPDATE:

    UPDATE notifications SET is_sent = true, sent_at = :now
    WHERE id = :id AND is_sent = false

Exactly one of any number of racing callers (other ticks, other
processes, the instant-create path) sees an affected row.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import select, update, delete, func, case
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import StoreUnavailableError
from app.models.notification import (
    Notification,
    NotificationPriority,
    NotificationType,
)
from app.models.user import User
from app.utils.clock import utc_now, as_naive_utc

logger = logging.getLogger(__name__)

# Errors that mean "the database could not be reached", as opposed to bugs
_UNAVAILABLE_ERRORS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)

# urgent > high > medium > low; unknown values sort last
_PRIORITY_ORDER = case(
    {p.value: p.rank for p in NotificationPriority},
    value=Notification.priority,
    else_=len(NotificationPriority),
)


class NotificationStore:
    """Notification persistence bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def _guard(self, action: str):
        try:
            yield
        except _UNAVAILABLE_ERRORS as exc:
            await self._rollback_quietly()
            raise StoreUnavailableError(f"{action} failed: {type(exc).__name__}") from exc

    async def _rollback_quietly(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as exc:
            logger.debug("Rollback after store failure also failed: %s", exc)

    # ------------------------------------------------------------------
    # Dispatch operations
    # ------------------------------------------------------------------

    async def fetch_due(self, now: Optional[datetime] = None) -> list[Notification]:
        """Unsent notifications scheduled at or before ``now``.

        Ordered urgent > high > medium > low, then earliest scheduled_time first.
        """
        now = now or utc_now()
        query = (
            select(Notification)
            .where(
                Notification.scheduled_time <= now,
                Notification.is_sent.is_(False),
            )
            .order_by(_PRIORITY_ORDER, Notification.scheduled_time.asc(), Notification.id.asc())
        )
        async with self._guard("fetch_due"):
            result = await self.session.execute(query)
            return list(result.scalars().all())

    async def claim(self, notification_id: int, now: Optional[datetime] = None) -> bool:
        """Atomically mark a notification sent.

        Returns True only for the caller that performed the false -> true transition.
        """
        now = now or utc_now()
        stmt = (
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.is_sent.is_(False),
            )
            .values(is_sent=True, sent_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._guard("claim"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return result.rowcount > 0

    async def mark_sent(self, notification_id: int) -> bool:
        """Pre-claim used by the instant-create path."""
        return await self.claim(notification_id)

    async def create(self, fields: Mapping[str, Any]) -> Notification:
        """Insert a notification. Delivery state is never taken from ``fields``."""
        notification = self._build(fields)
        self.session.add(notification)
        async with self._guard("create"):
            await self.session.commit()
            await self.session.refresh(notification)
        return notification

    async def create_if_absent(self, fields: Mapping[str, Any]) -> Optional[Notification]:
        """Insert a derived notification unless its dedup_key already exists.

        Returns None when another writer got there first. Any other integrity
        failure (missing recipient, missing type) is re-raised.
        """
        dedup_key = fields.get("dedup_key")
        notification = self._build(fields)
        self.session.add(notification)
        async with self._guard("create_if_absent"):
            try:
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                if dedup_key is None or not await self._dedup_key_exists(dedup_key):
                    raise
                logger.debug("Derived notification %s already exists", dedup_key)
                return None
            await self.session.refresh(notification)
        return notification

    async def _dedup_key_exists(self, dedup_key: str) -> bool:
        result = await self.session.execute(
            select(Notification.id).where(Notification.dedup_key == dedup_key)
        )
        return result.first() is not None

    @staticmethod
    def _build(fields: Mapping[str, Any]) -> Notification:
        data = dict(fields)
        data.pop("is_sent", None)
        data.pop("sent_at", None)
        data.pop("id", None)
        if "metadata" in data:
            data["extra_data"] = data.pop("metadata")
        priority = data.get("priority") or NotificationPriority.MEDIUM
        data["priority"] = NotificationPriority(priority).value
        for key in ("scheduled_time", "created_at"):
            if isinstance(data.get(key), datetime):
                data[key] = as_naive_utc(data[key])
        return Notification(**data, is_sent=False)

    async def recent_entity_ids(
        self,
        *,
        type_id: int,
        metadata_key: str,
        since: datetime,
    ) -> set[str]:
        """Entity ids referenced by notifications of one type created since ``since``.

        Rows whose metadata cannot be read are logged and ignored.
        """
        query = select(Notification.id, Notification.extra_data).where(
            Notification.type_id == type_id,
            Notification.created_at >= since,
        )
        async with self._guard("recent_entity_ids"):
            result = await self.session.execute(query)
            rows = result.all()

        entity_ids: set[str] = set()
        for notification_id, metadata in rows:
            if isinstance(metadata, str):
                try:
                    metadata = json.loads(metadata)
                except ValueError:
                    logger.warning("Notification %s has unparseable metadata", notification_id)
                    continue
            if metadata is None:
                continue
            if not isinstance(metadata, dict):
                logger.warning("Notification %s metadata is not an object", notification_id)
                continue
            value = metadata.get(metadata_key)
            if value is not None:
                entity_ids.add(str(value))
        return entity_ids

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, notification_id: int) -> Optional[Notification]:
        async with self._guard("get"):
            result = await self.session.execute(
                select(Notification)
                .where(Notification.id == notification_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._guard("get_user"):
            result = await self.session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def list_types(self) -> list[NotificationType]:
        async with self._guard("list_types"):
            result = await self.session.execute(
                select(NotificationType).order_by(NotificationType.type_name)
            )
            return list(result.scalars().all())

    async def get_type(self, type_id: int) -> Optional[NotificationType]:
        async with self._guard("get_type"):
            return await self.session.get(NotificationType, type_id)

    async def get_or_create_type(self, type_code: str, type_name: Optional[str] = None) -> NotificationType:
        async with self._guard("get_or_create_type"):
            result = await self.session.execute(
                select(NotificationType).where(NotificationType.type_code == type_code)
            )
            notification_type = result.scalar_one_or_none()
            if notification_type is not None:
                return notification_type

            notification_type = NotificationType(
                type_code=type_code,
                type_name=type_name or type_code.replace("_", " ").capitalize(),
            )
            self.session.add(notification_type)
            try:
                await self.session.commit()
            except IntegrityError:
                # Created concurrently by another writer
                await self.session.rollback()
                result = await self.session.execute(
                    select(NotificationType).where(NotificationType.type_code == type_code)
                )
                return result.scalar_one()
            await self.session.refresh(notification_type)
            return notification_type

    # ------------------------------------------------------------------
    # User-facing operations
    # ------------------------------------------------------------------

    async def list_for_user(
        self,
        user_id: int,
        *,
        is_read: Optional[bool] = None,
        priority: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Notification], int]:
        query = select(Notification).where(Notification.user_id == user_id)
        if is_read is not None:
            query = query.where(Notification.is_read.is_(is_read))
        if priority:
            query = query.where(Notification.priority == priority)

        count_query = select(func.count()).select_from(query.subquery())
        query = (
            query.order_by(Notification.scheduled_time.desc(), Notification.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self._guard("list_for_user"):
            total = (await self.session.execute(count_query)).scalar() or 0
            result = await self.session.execute(query)
            return list(result.scalars().all()), total

    async def unread_count(self, user_id: int) -> int:
        async with self._guard("unread_count"):
            result = await self.session.execute(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
            )
            return result.scalar() or 0

    async def mark_read(self, notification_id: int, user_id: int) -> bool:
        stmt = (
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(is_read=True, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._guard("mark_read"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return result.rowcount > 0

    async def mark_all_read(self, user_id: int) -> int:
        stmt = (
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._guard("mark_all_read"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return result.rowcount

    async def delete(self, notification_id: int, user_id: int) -> bool:
        stmt = (
            delete(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        async with self._guard("delete"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return result.rowcount > 0

    async def update_push_token(self, user_id: int, token: str) -> bool:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(fcm_token=token, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._guard("update_push_token"):
            result = await self.session.execute(stmt)
            await self.session.commit()
        return result.rowcount > 0
