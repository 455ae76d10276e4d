"""
Chat gateway protocol definition - WebSocket frames and envelopes.

Server -> client: every frame is an envelope ``{"type": str, "data": {...}}``.

Client -> server, one of:
- plain text (or a JSON string): answered with a ``pong`` echo
- ``{"type": ..., "data": {...}}``: generic message channel
- ``{"event": "message", "data": <text | {"type", "data"}>}``: same channel,
  explicitly named
- ``{"event": <event type>, "data": ...}``: direct named event
"""
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from stores.models import BundleRef, ParentRef, ServiceRequestRef
from .errors import ChatError, InvalidReference


class ClientEventType(str, Enum):
    """Events a client may send."""
    AUTHENTICATE = "authenticate"
    JOIN_CONVERSATION = "join_conversation"
    GET_CONVERSATION = "get_conversation"
    SEND_QUICK_CHAT = "send_quick_chat"
    SEND_MESSAGE = "send_message"
    LIST_CONVERSATIONS = "list_conversations"
    JOIN_ALL_CONVERSATIONS = "join_all_conversations"
    GET_AVAILABLE_QUICK_CHATS = "get_available_quick_chats"
    PING = "ping"


class ServerEventType(str, Enum):
    """Envelope types the server sends."""
    WELCOME = "welcome"
    AUTHENTICATED = "authenticated"
    JOINED_CONVERSATION = "joined_conversation"
    JOINED_ALL_CONVERSATIONS = "joined_all_conversations"
    CONVERSATION_HISTORY = "conversation_history"
    CONVERSATIONS = "conversations"
    NEW_MESSAGE = "new_message"
    MESSAGE_SENT = "message_sent"
    CONVERSATION_UPDATED = "conversation_updated"
    AVAILABLE_QUICK_CHATS = "available_quick_chats"
    PONG = "pong"
    ERROR = "error"


class FrameKind(str, Enum):
    RAW = "raw"          # bare text, echoed back
    GENERIC = "generic"  # {type, data} on the message channel
    DIRECT = "direct"    # named event


# ============ Envelopes ============

class Envelope(BaseModel):
    """Server -> client frame."""
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class ClientFrame(BaseModel):
    """A parsed client -> server frame."""
    kind: FrameKind
    type: Optional[str] = None
    data: Any = None
    text: Optional[str] = None


# ============ Request params ============

class _Params(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ConversationParams(_Params):
    """Parent reference as sent on the wire: exactly one of the two ids."""
    request_id: Optional[str] = None
    bundle_id: Optional[str] = None

    def parent_ref(self) -> ParentRef:
        return parent_ref_from_ids(self.request_id, self.bundle_id)


class SendQuickChatParams(ConversationParams):
    quick_chat_id: str = Field(min_length=1)


class SendMessageParams(ConversationParams):
    content: str = ""


def parent_ref_from_ids(
    request_id: Optional[str], bundle_id: Optional[str]
) -> Union[ServiceRequestRef, BundleRef]:
    """Build the tagged parent reference; both or neither is rejected."""
    if request_id and bundle_id:
        raise InvalidReference(
            "Provide either requestId or bundleId, not both",
            requestId=request_id,
            bundleId=bundle_id,
        )
    if request_id:
        return ServiceRequestRef(id=request_id)
    if bundle_id:
        return BundleRef(id=bundle_id)
    raise InvalidReference("requestId or bundleId is required")


class GatewayProtocol:
    """Helpers for building and parsing protocol frames."""

    @staticmethod
    def create_envelope(event: Union[ServerEventType, str], data: Optional[Dict[str, Any]] = None) -> Envelope:
        event_type = event.value if isinstance(event, ServerEventType) else event
        return Envelope(type=event_type, data=data or {})

    @staticmethod
    def create_error(error: Union[ChatError, str], **extra: Any) -> Envelope:
        if isinstance(error, ChatError):
            payload = error.to_payload()
        else:
            payload = {"message": error}
        payload.update({k: v for k, v in extra.items() if v is not None})
        return Envelope(type=ServerEventType.ERROR.value, data=payload)

    @staticmethod
    def timestamp() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def parse_frame(raw: str) -> ClientFrame:
        """Parse an incoming text frame.

        Raises ValueError for JSON that is neither a string nor an object.
        """
        try:
            payload = json.loads(raw)
        except ValueError:
            return ClientFrame(kind=FrameKind.RAW, text=raw)

        if isinstance(payload, str):
            return ClientFrame(kind=FrameKind.RAW, text=payload)
        if not isinstance(payload, dict):
            raise ValueError("frame must be a JSON object or a string")

        if "event" in payload:
            event = payload.get("event")
            data = payload.get("data")
            if event == "message":
                if isinstance(data, str):
                    return ClientFrame(kind=FrameKind.RAW, text=data)
                if not isinstance(data, dict):
                    raise ValueError("message event data must be an object or a string")
                return ClientFrame(kind=FrameKind.GENERIC, type=data.get("type"), data=data.get("data"))
            return ClientFrame(kind=FrameKind.DIRECT, type=event, data=data)

        return ClientFrame(kind=FrameKind.GENERIC, type=payload.get("type"), data=payload.get("data"))
