"""Notifications API - User notification management.

Provides endpoints for listing, creating and managing user notifications,
plus an operational surface for the background dispatcher.
"""

from fastapi import APIRouter, Query, status
from typing import Optional

from app.api.deps import DbSession, Dispatcher, NotificationSvc
from app.exceptions import NotFoundError
from app.schemas.notification import (
    FcmTokenUpdate,
    NotificationCreate,
    NotificationPriorityName,
    UserActionRequest,
)
from app.services.delivery_channels import serialize_notification
from app.services.notification_store import NotificationStore

router = APIRouter()


@router.get("/user/{user_id}")
async def list_user_notifications(
    user_id: int,
    db: DbSession,
    is_read: Optional[bool] = None,
    priority: Optional[NotificationPriorityName] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List a user's notifications, newest scheduled first."""
    notifications, total = await NotificationStore(db).list_for_user(
        user_id,
        is_read=is_read,
        priority=priority,
        limit=limit,
        offset=offset,
    )
    return {
        "success": True,
        "data": [serialize_notification(n) for n in notifications],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/user/{user_id}/unread-count")
async def get_unread_count(user_id: int, db: DbSession):
    count = await NotificationStore(db).unread_count(user_id)
    return {"success": True, "count": count}


@router.patch("/user/{user_id}/read-all")
async def mark_all_notifications_read(user_id: int, db: DbSession):
    """Mark all of a user's notifications as read."""
    count = await NotificationStore(db).mark_all_read(user_id)
    return {"success": True, "count": count, "message": f"Marked {count} notification(s) as read"}


@router.get("/types")
async def list_notification_types(db: DbSession):
    types = await NotificationStore(db).list_types()
    return {
        "success": True,
        "data": [
            {
                "id": t.id,
                "type_code": t.type_code,
                "type_name": t.type_name,
                "icon": t.icon,
                "color": t.color,
            }
            for t in types
        ],
    }


@router.get("/pending/all")
async def list_pending_notifications(db: DbSession):
    """Due notifications that have not been sent yet, in dispatch order."""
    pending = await NotificationStore(db).fetch_due()
    return {
        "success": True,
        "data": [serialize_notification(n) for n in pending],
        "count": len(pending),
    }


@router.post("/fcm-token")
async def update_fcm_token(body: FcmTokenUpdate, db: DbSession):
    """Store the push token of a user's device."""
    updated = await NotificationStore(db).update_push_token(body.user_id, body.fcm_token.strip())
    if not updated:
        raise NotFoundError("User", body.user_id)
    return {"success": True, "message": "FCM token updated"}


@router.get("/dispatcher/status")
async def get_dispatcher_status(dispatcher: Dispatcher):
    return {"success": True, "data": dispatcher.get_status()}


@router.post("/dispatcher/run-rules")
async def run_dispatcher_rules(dispatcher: Dispatcher):
    """Evaluate the derivation rules now instead of waiting for the next run."""
    results = await dispatcher.run_rules()
    return {"success": True, "data": [r.as_dict() for r in results]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_notification(
    body: NotificationCreate,
    db: DbSession,
    service: NotificationSvc,
):
    """
    Create a notification and deliver it immediately.

    A notification that is already due is claimed by this request and will
    not be sent again by the dispatcher. A future one is delivered now as
    an acknowledgment and again by the dispatcher when it becomes due.
    """
    store = NotificationStore(db)
    if await store.get_user(body.user_id) is None:
        raise NotFoundError("User", body.user_id)
    if await store.get_type(body.type_id) is None:
        raise NotFoundError("Notification type", body.type_id)

    result = await service.create_notification(body.model_dump())

    return {
        "success": True,
        "data": serialize_notification(result.notification),
        "claimed": result.claimed,
        "delivery": [outcome.as_dict() for outcome in result.outcomes],
        "message": "Notification created successfully",
    }


@router.get("/{notification_id}")
async def get_notification(notification_id: int, db: DbSession):
    notification = await NotificationStore(db).get(notification_id)
    if notification is None:
        raise NotFoundError("Notification", notification_id)
    return {"success": True, "data": serialize_notification(notification)}


@router.patch("/{notification_id}/read")
async def mark_notification_read(notification_id: int, body: UserActionRequest, db: DbSession):
    """Mark one of the user's notifications as read."""
    if not await NotificationStore(db).mark_read(notification_id, body.user_id):
        raise NotFoundError("Notification", notification_id)
    return {"success": True, "message": "Notification marked as read"}


@router.delete("/{notification_id}")
async def delete_notification(notification_id: int, body: UserActionRequest, db: DbSession):
    if not await NotificationStore(db).delete(notification_id, body.user_id):
        raise NotFoundError("Notification", notification_id)
    return {"success": True, "message": "Notification deleted successfully"}
