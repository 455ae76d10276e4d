"""
Connection manager - WebSocket connections and server-side rooms.
"""
import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from .events import EventEmitter, GatewayEvent
from .identity import Identity
from .protocol import Envelope, GatewayProtocol, ServerEventType


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


def user_room(user_id: str) -> str:
    return f"user_{user_id}"


def conversation_room(conversation_id: str) -> str:
    return f"conversation_{conversation_id}"


class Connection:
    """A single client connection."""

    def __init__(self, websocket: Any, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at = datetime.now()
        self.last_seen = datetime.now()
        self.state = SessionState.UNAUTHENTICATED
        self.identity: Optional[Identity] = None
        self.rooms: Set[str] = set()

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED and self.identity is not None

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None

    @property
    def role(self):
        return self.identity.role if self.identity else None

    def mark_authenticated(self, identity: Identity) -> None:
        self.identity = identity
        self.state = SessionState.AUTHENTICATED

    async def send_envelope(self, envelope: Envelope) -> bool:
        """Send a frame. Returns False instead of raising if the socket is gone."""
        if self.state == SessionState.CLOSED:
            return False
        try:
            await self.websocket.send_text(envelope.model_dump_json())
            return True
        except Exception as e:
            logger.debug(f"Send to {self.connection_id} failed: {e}")
            return False

    async def send(self, event: ServerEventType, data: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_envelope(GatewayProtocol.create_envelope(event, data))


class ConnectionManager:
    """Tracks open connections and room membership."""

    def __init__(self, event_emitter: Optional[EventEmitter] = None):
        self.connections: Dict[str, Connection] = {}
        self.rooms: Dict[str, Set[str]] = {}  # room -> connection ids
        self.event_emitter = event_emitter
        self._connection_counter = 0
        self._lock = asyncio.Lock()

    async def accept(self, websocket: Any, accept: bool = True) -> Connection:
        """Accept a transport connection and start tracking it."""
        if accept:
            await websocket.accept()

        async with self._lock:
            self._connection_counter += 1
            connection_id = f"conn_{self._connection_counter}_{datetime.now().timestamp()}"
            connection = Connection(websocket, connection_id)
            self.connections[connection_id] = connection

        logger.info(f"New connection accepted: {connection_id}")
        if self.event_emitter:
            await self.event_emitter.emit(GatewayEvent.CONNECTED, {"connection_id": connection_id})
        return connection

    async def disconnect(self, connection_id: str) -> Optional[Connection]:
        """Forget a connection and drop it from every room."""
        async with self._lock:
            connection = self.connections.pop(connection_id, None)
            if not connection:
                return None
            for room in list(connection.rooms):
                self._remove_from_room(room, connection_id)
            connection.rooms.clear()
            connection.state = SessionState.CLOSED

        logger.info(f"Connection disconnected: {connection_id}")
        if self.event_emitter:
            await self.event_emitter.emit(
                GatewayEvent.DISCONNECTED,
                {"connection_id": connection_id, "user_id": connection.user_id},
            )
        return connection

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    # ============ Rooms ============

    def join_room(self, connection: Connection, room: str) -> None:
        if connection.connection_id not in self.connections:
            return
        self.rooms.setdefault(room, set()).add(connection.connection_id)
        connection.rooms.add(room)

    def leave_room(self, connection: Connection, room: str) -> None:
        self._remove_from_room(room, connection.connection_id)
        connection.rooms.discard(room)

    def _remove_from_room(self, room: str, connection_id: str) -> None:
        members = self.rooms.get(room)
        if not members:
            return
        members.discard(connection_id)
        if not members:
            del self.rooms[room]

    def room_members(self, room: str) -> List[Connection]:
        return [
            self.connections[cid]
            for cid in self.rooms.get(room, set())
            if cid in self.connections
        ]

    async def send_to_room(self, room: str, envelope: Envelope) -> int:
        """Multicast to every connection in `room`; returns delivered count."""
        members = self.room_members(room)
        if not members:
            return 0
        results = await asyncio.gather(
            *(member.send_envelope(envelope) for member in members),
            return_exceptions=True,
        )
        return sum(1 for r in results if r is True)

    # ============ Introspection ============

    def touch(self, connection_id: str) -> None:
        connection = self.get_connection(connection_id)
        if connection:
            connection.last_seen = datetime.now()

    def get_active_count(self) -> int:
        return len(self.connections)

    def get_connections_info(self) -> Dict[str, Dict[str, Any]]:
        return {
            conn_id: {
                "connection_id": conn.connection_id,
                "user_id": conn.user_id,
                "role": conn.role.value if conn.role else None,
                "state": conn.state.value,
                "rooms": sorted(conn.rooms),
                "connected_at": conn.connected_at.isoformat(),
            }
            for conn_id, conn in self.connections.items()
        }
