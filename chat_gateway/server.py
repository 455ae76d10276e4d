"""
Session gateway - connection lifecycle and event routing for the chat socket.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from fastapi import WebSocketDisconnect
from loguru import logger
from pydantic import ValidationError

from stores.base import StoreBackend
from utils.logger import connection_logger
from .connection import Connection, ConnectionManager, SessionState, user_room
from .conversation_service import ConversationResolver
from .dispatcher import FanoutDispatcher
from .errors import AuthenticationRequired, ChatError
from .events import EventEmitter, GatewayEvent
from .identity import Identity, IdentityResolver, extract_handshake_credential
from .message_pipeline import DeliveryResult, MessagePipeline
from .presence import PresenceRegistry
from .protocol import (
    ClientEventType,
    ConversationParams,
    FrameKind,
    GatewayProtocol,
    SendMessageParams,
    SendQuickChatParams,
    ServerEventType,
)

Handler = Callable[[Connection, Any], Awaitable[None]]


@dataclass(frozen=True)
class Route:
    handler: Handler
    requires_auth: bool = True
    auth_message: str = "Authentication required"


class SessionGateway:
    """Per-connection state machine for the chat socket.

    States: unauthenticated -> authenticated -> closed. Every inbound event is
    looked up in the route table and checked against the connection state
    before its handler runs. ChatErrors raised by handlers become ``error``
    envelopes to the originating connection only.
    """

    def __init__(
        self,
        stores: StoreBackend,
        identity_resolver: IdentityResolver,
        presence: Optional[PresenceRegistry] = None,
        connection_manager: Optional[ConnectionManager] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        # Registry, bus and connection manager are injectable for tests.
        self.event_emitter = event_emitter or EventEmitter()
        self.connection_manager = connection_manager or ConnectionManager(self.event_emitter)
        self.presence = presence if presence is not None else PresenceRegistry()
        self.identity_resolver = identity_resolver

        self.resolver = ConversationResolver(stores, self.event_emitter)
        self.pipeline = MessagePipeline(stores, self.resolver, self.event_emitter)
        self.dispatcher = FanoutDispatcher(self.connection_manager, self.presence)

        self._routes: Dict[ClientEventType, Route] = {}
        self._register_default_handlers()

        self.started_at: Optional[datetime] = None
        self.is_running = False

    def _register_default_handlers(self) -> None:
        self._routes[ClientEventType.PING] = Route(self._handle_ping, requires_auth=False)
        self._routes[ClientEventType.AUTHENTICATE] = Route(self._handle_authenticate, requires_auth=False)

        self._routes[ClientEventType.JOIN_CONVERSATION] = Route(
            self._handle_join_conversation,
            auth_message="Authentication required to join conversations",
        )
        self._routes[ClientEventType.GET_CONVERSATION] = Route(
            self._handle_get_conversation,
            auth_message="Authentication required to view conversations",
        )
        self._routes[ClientEventType.SEND_QUICK_CHAT] = Route(
            self._handle_send_quick_chat,
            auth_message="Authentication required to send messages",
        )
        self._routes[ClientEventType.SEND_MESSAGE] = Route(
            self._handle_send_message,
            auth_message="Authentication required to send messages",
        )
        self._routes[ClientEventType.LIST_CONVERSATIONS] = Route(
            self._handle_list_conversations,
            auth_message="Authentication required to list conversations",
        )
        self._routes[ClientEventType.JOIN_ALL_CONVERSATIONS] = Route(
            self._handle_join_all_conversations,
            auth_message="Authentication required to join conversations",
        )
        self._routes[ClientEventType.GET_AVAILABLE_QUICK_CHATS] = Route(
            self._handle_get_available_quick_chats,
            auth_message="Authentication required to load quick chats",
        )

    def register_handler(self, event_type: ClientEventType, route: Route) -> None:
        self._routes[event_type] = route
        logger.info(f"Registered handler for: {event_type.value}")

    async def start(self) -> None:
        self.started_at = datetime.now()
        self.is_running = True
        logger.info("Session gateway started")

    async def stop(self) -> None:
        self.is_running = False
        self.presence.clear()
        logger.info("Session gateway stopped")

    # ============ Connection lifecycle ============

    async def open_session(
        self,
        websocket: Any,
        headers: Optional[Mapping[str, str]] = None,
        query_params: Optional[Mapping[str, str]] = None,
        auth: Optional[Mapping[str, Any]] = None,
        accept: bool = True,
    ) -> Connection:
        """Accept a transport connection, try the handshake credential, greet."""
        connection = await self.connection_manager.accept(websocket, accept=accept)
        credential = extract_handshake_credential(headers, query_params, auth)
        authenticated = await self.authenticate_handshake(connection, credential)

        if authenticated:
            await connection.send(ServerEventType.WELCOME, {
                "message": "Welcome! You are authenticated.",
                "userId": connection.user_id,
                "userRole": connection.role.value,
                "timestamp": GatewayProtocol.timestamp(),
            })
        else:
            await connection.send(ServerEventType.WELCOME, {
                "message": "Welcome! Please authenticate to use chat features.",
                "timestamp": GatewayProtocol.timestamp(),
            })
        return connection

    async def handle_connection(self, websocket: Any, connection: Connection) -> None:
        """Receive loop for one connection; frames are handled in arrival order."""
        connection_id = connection.connection_id
        log = connection_logger(connection_id, connection.user_id)
        try:
            while connection.state != SessionState.CLOSED:
                data = await websocket.receive_text()
                await self.handle_frame(connection, data)
        except WebSocketDisconnect:
            log.info("Client went away")
        except Exception as e:
            log.error(f"Connection error: {e}")
        finally:
            await self.close_session(connection_id)

    async def close_session(self, connection_id: str) -> None:
        connection = await self.connection_manager.disconnect(connection_id)
        if connection and connection.user_id:
            self.presence.deregister(connection.user_id, connection_id)
            connection_logger(connection_id, connection.user_id).info("Client disconnected")

    # ============ Authentication ============

    async def authenticate_handshake(self, connection: Connection, credential: Optional[str]) -> bool:
        """Optimistic handshake authentication; failure leaves the connection unauthenticated."""
        if not credential:
            return False
        try:
            identity = await self.identity_resolver.resolve(credential)
        except ChatError as e:
            connection_logger(connection.connection_id).info(f"Handshake auth failed: {e.message}")
            await self.event_emitter.emit(
                GatewayEvent.AUTH_FAILED,
                {"connection_id": connection.connection_id, "phase": "handshake", "code": e.code},
            )
            return False
        await self._establish_identity(connection, identity)
        return True

    async def authenticate_explicit(self, connection: Connection, credential: Optional[str]) -> Identity:
        """Explicit `authenticate` event. Raises ChatError on failure; state is kept."""
        try:
            identity = await self.identity_resolver.resolve(credential)
        except ChatError as e:
            await self.event_emitter.emit(
                GatewayEvent.AUTH_FAILED,
                {"connection_id": connection.connection_id, "phase": "explicit", "code": e.code},
            )
            raise
        await self._establish_identity(connection, identity)
        return identity

    async def _establish_identity(self, connection: Connection, identity: Identity) -> None:
        previous = connection.user_id
        if previous and previous != identity.user_id:
            # Switching users: drop everything the old identity was subscribed to.
            self.presence.deregister(previous, connection.connection_id)
            for room in list(connection.rooms):
                self.connection_manager.leave_room(connection, room)
            connection_logger(connection.connection_id, previous).info(
                f"Re-authenticating as {identity.user_id}, left previous rooms"
            )
        connection.mark_authenticated(identity)
        self.presence.register(identity.user_id, connection.connection_id)
        self.connection_manager.join_room(connection, user_room(identity.user_id))
        connection_logger(connection.connection_id, identity.user_id).info(
            f"Authenticated as {identity.role.value}"
        )
        await self.event_emitter.emit(
            GatewayEvent.AUTHENTICATED,
            {
                "connection_id": connection.connection_id,
                "user_id": identity.user_id,
                "role": identity.role.value,
            },
        )

    # ============ Routing ============

    async def handle_frame(self, connection: Connection, raw: str) -> None:
        self.connection_manager.touch(connection.connection_id)
        try:
            frame = GatewayProtocol.parse_frame(raw)
        except ValueError as e:
            await connection.send_envelope(GatewayProtocol.create_error(f"Invalid message format: {e}"))
            return

        if frame.kind == FrameKind.RAW:
            await connection.send(ServerEventType.PONG, {
                "message": "Pong!",
                "yourMessage": frame.text,
                "timestamp": GatewayProtocol.timestamp(),
            })
            return

        if not frame.type:
            await connection.send_envelope(GatewayProtocol.create_error("Message must have 'type' field"))
            return

        await self.dispatch(connection, frame.type, frame.data)

    async def dispatch(self, connection: Connection, event_type: str, data: Any) -> None:
        """Route one event according to (connection state, event type)."""
        if connection.state == SessionState.CLOSED:
            return

        try:
            route_key = ClientEventType(event_type)
        except ValueError:
            await connection.send_envelope(GatewayProtocol.create_error(f"Unknown event type: {event_type}"))
            return
        route = self._routes.get(route_key)
        if route is None:
            await connection.send_envelope(GatewayProtocol.create_error(f"Unknown event type: {event_type}"))
            return

        if route.requires_auth and connection.state != SessionState.AUTHENTICATED:
            await self._reject(connection, route_key, AuthenticationRequired(route.auth_message))
            return

        try:
            await route.handler(connection, data)
        except ChatError as e:
            await self._reject(connection, route_key, e)
        except ValidationError as e:
            await connection.send_envelope(
                GatewayProtocol.create_error(f"Invalid message format: {_validation_summary(e)}")
            )
        except Exception as e:
            connection_logger(connection.connection_id, connection.user_id).exception(
                f"Error handling {event_type}: {e}"
            )
            await connection.send_envelope(GatewayProtocol.create_error(f"Internal error: {e}"))

    async def _reject(self, connection: Connection, event_type: ClientEventType, error: ChatError) -> None:
        await connection.send_envelope(GatewayProtocol.create_error(error))
        await self.event_emitter.emit(
            GatewayEvent.REQUEST_FAILED,
            {
                "connection_id": connection.connection_id,
                "event": event_type.value,
                "code": error.code,
                "error": error.message,
            },
        )

    # ============ Handlers ============

    async def _handle_ping(self, connection: Connection, data: Any) -> None:
        await connection.send(ServerEventType.PONG, {
            "message": "Pong from server!",
            "yourData": data,
            "timestamp": GatewayProtocol.timestamp(),
        })

    async def _handle_authenticate(self, connection: Connection, data: Any) -> None:
        if isinstance(data, dict):
            token = data.get("token")
        else:
            token = data if isinstance(data, str) else None
        identity = await self.authenticate_explicit(connection, token)
        await connection.send(ServerEventType.AUTHENTICATED, {
            "success": True,
            "userId": identity.user_id,
            "userRole": identity.role.value,
            "message": "Authentication successful",
        })

    async def _handle_join_conversation(self, connection: Connection, data: Any) -> None:
        params = ConversationParams.model_validate(data or {})
        parent = params.parent_ref()
        conversation = await self.resolver.resolve_or_create(connection.identity, parent)
        self.dispatcher.join_conversation_room(connection, conversation.id)
        logger.info(f"User {connection.user_id} joined conversation {conversation.id}")

        await connection.send(ServerEventType.JOINED_CONVERSATION, {
            "conversationId": conversation.id,
            "requestId": conversation.request_id,
            "bundleId": conversation.bundle_id,
            "message": "Successfully joined conversation",
            "timestamp": GatewayProtocol.timestamp(),
        })
        history = await self.resolver.history_payload(conversation)
        await connection.send(ServerEventType.CONVERSATION_HISTORY, history)

    async def _handle_get_conversation(self, connection: Connection, data: Any) -> None:
        params = ConversationParams.model_validate(data or {})
        history = await self.resolver.get_history(connection.identity, params.parent_ref())
        await connection.send(ServerEventType.CONVERSATION_HISTORY, history)

    async def _handle_send_quick_chat(self, connection: Connection, data: Any) -> None:
        params = SendQuickChatParams.model_validate(data or {})
        result = await self.pipeline.send_quick_message(
            connection.identity, params.parent_ref(), params.quick_chat_id
        )
        await self._deliver(connection, result)

    async def _handle_send_message(self, connection: Connection, data: Any) -> None:
        params = SendMessageParams.model_validate(data or {})
        result = await self.pipeline.send_text_message(
            connection.identity, params.parent_ref(), params.content
        )
        self.dispatcher.join_conversation_room(connection, result.conversation.id)
        await self._deliver(connection, result)

    async def _handle_list_conversations(self, connection: Connection, data: Any) -> None:
        conversations = await self.resolver.list_for_user(connection.identity)
        await connection.send(ServerEventType.CONVERSATIONS, {
            "conversations": [c.summary() for c in conversations],
        })

    async def _handle_join_all_conversations(self, connection: Connection, data: Any) -> None:
        conversations = await self.resolver.list_for_user(connection.identity)
        for conversation in conversations:
            self.dispatcher.join_conversation_room(connection, conversation.id)
        await connection.send(ServerEventType.JOINED_ALL_CONVERSATIONS, {
            "joined": [
                {
                    "conversationId": c.id,
                    "requestId": c.request_id,
                    "bundleId": c.bundle_id,
                }
                for c in conversations
            ],
            "message": "Joined all conversations for realtime updates",
        })

    async def _handle_get_available_quick_chats(self, connection: Connection, data: Any) -> None:
        templates = await self.pipeline.available_quick_chats(connection.identity)
        await connection.send(ServerEventType.AVAILABLE_QUICK_CHATS, {
            "quickChats": [t.to_wire() for t in templates],
        })

    async def _deliver(self, connection: Connection, result: DeliveryResult) -> None:
        """Fan a stored message out: room broadcast, other-party ping, sender ack."""
        identity = connection.identity
        conversation = result.conversation
        message = result.message

        new_message = {
            "conversationId": conversation.id,
            "message": message.to_wire(),
            "sender": {"id": identity.user_id, "role": identity.role.value},
        }
        quick_chat_info = None
        if result.template is not None:
            quick_chat_info = {"id": result.template.id, "usageCount": result.template.usage_count}
            new_message["quickChatInfo"] = quick_chat_info

        await self.dispatcher.broadcast_to_conversation(
            conversation.id,
            GatewayProtocol.create_envelope(ServerEventType.NEW_MESSAGE, new_message),
        )

        other_party = conversation.other_party(identity.role)
        if other_party and other_party != identity.user_id:
            await self.dispatcher.notify_party(
                other_party,
                GatewayProtocol.create_envelope(ServerEventType.CONVERSATION_UPDATED, {
                    "conversationId": conversation.id,
                    "senderRole": identity.role.value,
                    "lastMessage": conversation.last_message,
                    "lastMessageAt": conversation.last_message_at.isoformat() if conversation.last_message_at else None,
                    "hasNewMessage": True,
                    "quickChatUsed": result.template is not None,
                }),
            )

        sent = {
            "success": True,
            "conversationId": conversation.id,
            "message": "Message sent successfully",
            "savedMessage": message.to_wire(),
        }
        if quick_chat_info:
            sent["quickChatInfo"] = quick_chat_info
        await connection.send(ServerEventType.MESSAGE_SENT, sent)

    # ============ Introspection ============

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self.is_running else "stopped",
            "uptime": (datetime.now() - self.started_at).total_seconds() if self.started_at else 0,
            "connections": self.connection_manager.get_active_count(),
            "presence": len(self.presence),
            "rooms": len(self.connection_manager.rooms),
        }


def _validation_summary(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return "; ".join(parts)
