from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from loguru import logger

from stores.base import StoreBackend, StoreError
from stores.models import Conversation, Message, ParentRef, QuickChatTemplate

from .conversation_service import ConversationResolver
from .errors import ConversationUnavailable, InvalidMessage, TemplateNotFound
from .events import EventEmitter, GatewayEvent
from .identity import Identity


@dataclass
class DeliveryResult:
    conversation: Conversation
    message: Message
    template: Optional[QuickChatTemplate] = None


class MessagePipeline:
    """Appends messages to conversations.

    A send is the sequence: resolve conversation, append message together
    with the last-message summary, then bump the template usage counter.
    The counter is telemetry; failing to bump it does not fail the send.
    """

    def __init__(
        self,
        stores: StoreBackend,
        resolver: ConversationResolver,
        event_emitter: Optional[EventEmitter] = None,
    ) -> None:
        self.stores = stores
        self.resolver = resolver
        self.event_emitter = event_emitter

    async def send_quick_message(
        self, sender: Identity, parent: ParentRef, template_id: str
    ) -> DeliveryResult:
        try:
            template = await self.stores.quick_chats.get_owned(
                template_id, sender.user_id, sender.role.value
            )
        except StoreError as e:
            raise ConversationUnavailable() from e
        if template is None:
            logger.info("Quick chat {} not available to {} ({})", template_id, sender.user_id, sender.role.value)
            raise TemplateNotFound(quickChatId=template_id)

        conversation = await self.resolver.resolve_or_create(sender, parent)
        message = Message(
            sender_id=sender.user_id,
            sender_role=sender.role,
            content=template.content,
            quick_chat_id=template.id,
            is_quick_chat=True,
        )
        conversation = await self._append(conversation, message)

        try:
            updated = await self.stores.quick_chats.increment_usage(template.id)
            if updated is not None:
                template = updated
        except Exception as e:
            logger.warning("Quick chat usage increment failed for {}: {}", template.id, e)

        return DeliveryResult(conversation=conversation, message=message, template=template)

    async def send_text_message(self, sender: Identity, parent: ParentRef, content: str) -> DeliveryResult:
        text = (content or "").strip()
        if not text:
            raise InvalidMessage()

        conversation = await self.resolver.resolve_or_create(sender, parent)
        message = Message(sender_id=sender.user_id, sender_role=sender.role, content=text)
        conversation = await self._append(conversation, message)
        return DeliveryResult(conversation=conversation, message=message)

    async def available_quick_chats(self, owner: Identity) -> List[QuickChatTemplate]:
        """Templates the user may send: their own active ones."""
        try:
            return await self.stores.quick_chats.list_owned(owner.user_id, owner.role.value)
        except StoreError as e:
            raise ConversationUnavailable() from e

    async def _append(self, conversation: Conversation, message: Message) -> Conversation:
        try:
            updated = await self.stores.conversations.append_message(conversation.id, message)
        except StoreError as e:
            logger.error("Append to conversation {} failed: {}", conversation.id, e)
            raise ConversationUnavailable(conversationId=conversation.id) from e

        logger.info(
            "Message {} appended to {} by {} ({} messages)",
            message.id, updated.id, message.sender_id, len(updated.messages),
        )
        if self.event_emitter:
            await self.event_emitter.emit(
                GatewayEvent.MESSAGE_APPENDED,
                {
                    "conversation_id": updated.id,
                    "message_id": message.id,
                    "sender_id": message.sender_id,
                    "quick_chat_id": message.quick_chat_id,
                },
            )
        return updated
