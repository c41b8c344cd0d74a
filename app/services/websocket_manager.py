"""
WebSocket Connection Manager

Tracks live WebSocket connections grouped into rooms (one room per user,
``user:<id>``) and implements the realtime transport capability used by
the broadcast delivery channel: ``emit(room, event, payload)``.

One manager is created per application in the lifespan handler and kept
on ``app.state.realtime``; when realtime is disabled there is no manager
and the broadcast channel is not built.
"""

from fastapi import WebSocket
from typing import Dict, Set, Optional, Any
from datetime import datetime
import logging
import asyncio

from app.utils.clock import utc_now

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Manages WebSocket connections and room-addressed event delivery.

    A socket may be in several rooms; a room may hold several sockets
    (multiple tabs/devices for the same user).
    """

    def __init__(self):
        self._rooms: Dict[str, Set[WebSocket]] = {}
        # Reverse lookup: WebSocket -> rooms it joined
        self._memberships: Dict[WebSocket, Set[str]] = {}
        # Heartbeat tracking: WebSocket -> last ping timestamp
        self._heartbeats: Dict[WebSocket, datetime] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, room: str) -> None:
        """Accept a WebSocket connection and join it to ``room``."""
        await websocket.accept()
        await self.join(websocket, room)

        logger.info(
            "WebSocket connected: room=%s, total_connections=%d",
            room,
            self.total_connections,
        )

    async def join(self, websocket: WebSocket, room: str) -> None:
        async with self._lock:
            self._rooms.setdefault(room, set()).add(websocket)
            self._memberships.setdefault(websocket, set()).add(room)
            self._heartbeats[websocket] = utc_now()

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket from every room it joined."""
        for room in self._memberships.pop(websocket, set()):
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self._rooms[room]

        self._heartbeats.pop(websocket, None)

        logger.info("WebSocket disconnected: total_connections=%d", self.total_connections)

    def update_heartbeat(self, websocket: WebSocket) -> None:
        self._heartbeats[websocket] = utc_now()

    @property
    def total_connections(self) -> int:
        return len(self._memberships)

    @property
    def active_rooms(self) -> Set[str]:
        return set(self._rooms.keys())

    def has_room(self, room: str) -> bool:
        return bool(self._rooms.get(room))

    async def emit(self, room: str, event: str, payload: dict) -> int:
        """
        Send an event to every connection in ``room``.

        Args:
            room: Target room, e.g. ``user:42``
            event: Event name, e.g. ``notification.created``
            payload: JSON-serializable event data

        Returns:
            Number of connections the event reached
        """
        members = list(self._rooms.get(room, ()))
        if not members:
            return 0

        message = {
            "type": event,
            "data": payload,
            "timestamp": utc_now().isoformat(),
        }

        sent_count = 0
        dead_connections = []

        for websocket in members:
            try:
                await websocket.send_json(message)
                sent_count += 1
            except Exception as e:
                logger.warning("Failed to send to room %s: %s", room, e)
                dead_connections.append(websocket)

        for ws in dead_connections:
            self.disconnect(ws)

        return sent_count

    async def check_stale_connections(self, timeout_seconds: int = 120) -> int:
        """Close and forget connections whose last heartbeat is older than the timeout."""
        now = utc_now()

        async with self._lock:
            stale = [
                websocket
                for websocket, last_heartbeat in self._heartbeats.items()
                if (now - last_heartbeat).total_seconds() > timeout_seconds
            ]

        for websocket in stale:
            try:
                await websocket.close(code=4002, reason="Connection timeout")
            except Exception as e:
                logger.debug("Closing stale websocket failed: %s", e)
            self.disconnect(websocket)

        if stale:
            logger.info("Cleaned up %d stale WebSocket connections", len(stale))

        return len(stale)

    def get_connection_stats(self) -> Dict[str, Any]:
        return {
            "total_connections": self.total_connections,
            "rooms": len(self._rooms),
            "connections_by_room": {room: len(members) for room, members in self._rooms.items()},
        }
