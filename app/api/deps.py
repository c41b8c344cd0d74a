"""
FastAPI Dependencies

Provides dependency injection for database sessions and the notification
components built in the application lifespan (kept on ``app.state``).
"""

from typing import Annotated, Optional
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.services.notification_dispatcher import NotificationDispatcher
from app.services.notification_service import NotificationService
from app.services.websocket_manager import ConnectionManager


def get_notification_service(request: Request) -> NotificationService:
    service = getattr(request.app.state, "notification_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notification service is not initialized",
        )
    return service


def get_dispatcher(request: Request) -> NotificationDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notification dispatcher is not initialized",
        )
    return dispatcher


def get_realtime(request: Request) -> Optional[ConnectionManager]:
    """Realtime transport, or None when realtime is disabled."""
    return getattr(request.app.state, "realtime", None)


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
NotificationSvc = Annotated[NotificationService, Depends(get_notification_service)]
Dispatcher = Annotated[NotificationDispatcher, Depends(get_dispatcher)]
Realtime = Annotated[Optional[ConnectionManager], Depends(get_realtime)]
