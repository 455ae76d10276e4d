"""
Realtime conversation gateway for the services marketplace.
"""
from .protocol import GatewayProtocol, ClientEventType, ServerEventType
from .server import SessionGateway
from .connection import ConnectionManager, SessionState
from .events import EventEmitter, GatewayEvent
from .identity import Identity, IdentityResolver, create_access_token
from .presence import PresenceRegistry
from .conversation_service import ConversationResolver
from .message_pipeline import MessagePipeline, DeliveryResult
from .dispatcher import FanoutDispatcher

__all__ = [
    'GatewayProtocol',
    'SessionGateway',
    'ConnectionManager',
    'SessionState',
    'EventEmitter',
    'GatewayEvent',
    'Identity',
    'IdentityResolver',
    'create_access_token',
    'PresenceRegistry',
    'ConversationResolver',
    'MessagePipeline',
    'DeliveryResult',
    'FanoutDispatcher',
    'ClientEventType',
    'ServerEventType',
]
