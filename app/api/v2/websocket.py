"""
WebSocket Endpoint

Realtime notification stream for a user. Each connection joins the user's
room (``user:<id>``); the broadcast delivery channel emits
``notification.created`` events into that room.

Message Protocol:
- Client -> Server:
    - {"type": "ping"} - Heartbeat ping
- Server -> Client:
    - {"type": "connected", "user_id": 123, "timestamp": "..."} - Connection confirmation
    - {"type": "pong", "timestamp": "..."} - Heartbeat response
    - {"type": "notification.created", "data": {...}, "timestamp": "..."} - New notification
    - {"type": "error", "message": "..."} - Error message
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging
import json

from app.api.deps import Realtime
from app.services.delivery_channels import user_room
from app.utils.clock import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/notifications/{user_id}")
async def notifications_websocket(websocket: WebSocket, user_id: int):
    manager = getattr(websocket.app.state, "realtime", None)
    if manager is None:
        await websocket.close(code=4003, reason="Realtime disabled")
        return

    await manager.connect(websocket, user_room(user_id))

    try:
        await websocket.send_json(
            {
                "type": "connected",
                "user_id": user_id,
                "timestamp": utc_now().isoformat(),
            }
        )

        while True:
            try:
                data = await websocket.receive_json()
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON format"})
                continue

            message_type = data.get("type") if isinstance(data, dict) else None

            if message_type == "ping":
                manager.update_heartbeat(websocket)
                await websocket.send_json({"type": "pong", "timestamp": utc_now().isoformat()})
            else:
                await websocket.send_json(
                    {
                        "type": "error",
                        "message": f"Unknown message type: {message_type}",
                    }
                )

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected: user_id=%s", user_id)
    except Exception as e:
        logger.error("WebSocket error for user %s: %s", user_id, e)
    finally:
        manager.disconnect(websocket)


@router.get("/ws/stats")
async def get_websocket_stats(realtime: Realtime):
    """Connection counts per room. Empty when realtime is disabled."""
    if realtime is None:
        return {"enabled": False, "total_connections": 0, "rooms": 0, "connections_by_room": {}}
    return {"enabled": True, **realtime.get_connection_stats()}
