"""
Fan-out of chat events to conversation rooms and personal channels.
"""
from typing import Optional

from loguru import logger

from .connection import Connection, ConnectionManager, conversation_room
from .presence import PresenceRegistry
from .protocol import Envelope


class FanoutDispatcher:
    """Room multicast plus single-target presence notifications.

    The sender is not excluded from room broadcasts; clients de-duplicate by
    message id.
    """

    def __init__(self, connection_manager: ConnectionManager, presence: PresenceRegistry):
        self.connection_manager = connection_manager
        self.presence = presence

    def join_conversation_room(self, connection: Connection, conversation_id: str) -> None:
        self.connection_manager.join_room(connection, conversation_room(conversation_id))

    async def broadcast_to_conversation(self, conversation_id: str, envelope: Envelope) -> int:
        room = conversation_room(conversation_id)
        delivered = await self.connection_manager.send_to_room(room, envelope)
        logger.debug(f"{envelope.type} -> {room}: {delivered} connection(s)")
        return delivered

    async def notify_party(self, user_id: Optional[str], envelope: Envelope) -> bool:
        """Deliver to the user's registered connection, if any. Never queued."""
        if not user_id:
            return False
        connection_id = self.presence.lookup(user_id)
        if not connection_id:
            return False
        connection = self.connection_manager.get_connection(connection_id)
        if not connection:
            return False
        return await connection.send_envelope(envelope)
