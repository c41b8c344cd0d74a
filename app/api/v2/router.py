from fastapi import APIRouter
from app.api.v2 import (
    notifications,
    websocket,
)

api_router = APIRouter()

# Include all v2 routers
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
api_router.include_router(websocket.router, tags=["websocket"])
