"""
Error taxonomy of the chat gateway.

Every ChatError is turned into an `error` envelope for the originating
connection by the session gateway; none of them closes the connection.
"""
from typing import Any, Dict, Optional


class ChatError(Exception):
    code = "chat_error"
    default_message = "Chat request failed"

    def __init__(self, message: Optional[str] = None, **data: Any):
        self.message = message or self.default_message
        self.data: Dict[str, Any] = data
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload = {"message": self.message, "code": self.code}
        payload.update({k: v for k, v in self.data.items() if v is not None})
        return payload


# ---- authentication ----

class InvalidCredential(ChatError):
    code = "invalid_credential"
    default_message = "Authentication failed: invalid or expired token"


class UnknownSubject(ChatError):
    code = "unknown_subject"
    default_message = "Authentication failed: user not found"


class AuthenticationRequired(ChatError):
    code = "authentication_required"
    default_message = "Authentication required"


# ---- conversation resolution ----

class InvalidReference(ChatError):
    code = "invalid_reference"
    default_message = "Exactly one of requestId or bundleId is required"


class NotFound(ChatError):
    code = "not_found"
    default_message = "Not found"


class AccessDenied(ChatError):
    code = "access_denied"
    default_message = "Access denied to this conversation"


# ---- message send ----

class TemplateNotFound(ChatError):
    code = "template_not_found"
    default_message = "Quick chat not found or access denied"


class InvalidMessage(ChatError):
    code = "invalid_message"
    default_message = "Message content is required"


class ConversationUnavailable(ChatError):
    """Storage failure. Transient from the client's point of view."""
    code = "conversation_unavailable"
    default_message = "Conversation storage is temporarily unavailable"
