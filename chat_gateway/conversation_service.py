from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from stores.base import DuplicateParentError, StoreBackend, StoreError
from stores.models import Account, BundleRef, Conversation, ParentRef, ServiceRequestRef

from .errors import AccessDenied, ConversationUnavailable, InvalidReference, NotFound
from .events import EventEmitter, GatewayEvent
from .identity import Identity


@dataclass(frozen=True)
class ParentAccess:
    """Parties of a parent entity as seen by the conversation layer."""
    customer_id: str
    provider_id: Optional[str]
    authorized: Set[str]


class ConversationResolver:
    """Find-or-create of the single conversation bound to a parent entity.

    Access is checked against the parent before any conversation lookup, so a
    denied request never creates a document. Concurrent first joiners are
    settled by the store's uniqueness constraint on the parent reference: the
    loser gets DuplicateParentError and re-reads the winner's document.
    """

    def __init__(self, stores: StoreBackend, event_emitter: Optional[EventEmitter] = None) -> None:
        self.stores = stores
        self.event_emitter = event_emitter

    async def load_parent(self, parent: ParentRef) -> ParentAccess:
        try:
            if isinstance(parent, ServiceRequestRef):
                request = await self.stores.service_requests.get(parent.id)
                if request is None:
                    raise NotFound("Service request not found", requestId=parent.id)
                return ParentAccess(
                    customer_id=request.customer_id,
                    provider_id=request.provider_id,
                    authorized=request.authorized_ids(),
                )
            if isinstance(parent, BundleRef):
                bundle = await self.stores.bundles.get(parent.id)
                if bundle is None:
                    raise NotFound("Bundle not found", bundleId=parent.id)
                return ParentAccess(
                    customer_id=bundle.creator_id,
                    provider_id=bundle.provider_id,
                    authorized=bundle.authorized_ids(),
                )
        except StoreError as e:
            raise ConversationUnavailable() from e
        raise InvalidReference()

    async def authorize(self, identity: Identity, parent: ParentRef) -> ParentAccess:
        access = await self.load_parent(parent)
        if identity.user_id not in access.authorized:
            logger.info(
                "Access denied: user={} parent={}:{}", identity.user_id, parent.kind, parent.id
            )
            message = (
                "Access denied to this bundle conversation"
                if isinstance(parent, BundleRef)
                else "Access denied to this conversation"
            )
            raise AccessDenied(message, **{parent.field_name: parent.id})
        return access

    async def resolve_or_create(self, identity: Identity, parent: ParentRef) -> Conversation:
        access = await self.authorize(identity, parent)
        try:
            existing = await self.stores.conversations.find_by_parent(parent)
            if existing is not None:
                return existing

            conversation = Conversation(
                parent=parent,
                customer_id=access.customer_id,
                provider_id=access.provider_id,
            )
            try:
                created = await self.stores.conversations.create(conversation)
            except DuplicateParentError:
                logger.info("Conversation for {}:{} created concurrently, re-fetching", parent.kind, parent.id)
                winner = await self.stores.conversations.find_by_parent(parent)
                if winner is None:
                    raise ConversationUnavailable()
                return winner
        except StoreError as e:
            raise ConversationUnavailable() from e

        logger.info("Conversation created: {} for {}:{}", created.id, parent.kind, parent.id)
        if self.event_emitter:
            await self.event_emitter.emit(
                GatewayEvent.CONVERSATION_CREATED,
                {
                    "conversation_id": created.id,
                    "parent_kind": parent.kind,
                    "parent_id": parent.id,
                    "created_by": identity.user_id,
                },
            )
        return created

    async def get_history(self, identity: Identity, parent: ParentRef) -> Dict[str, Any]:
        """Resolve the conversation and build the `conversation_history` payload."""
        conversation = await self.resolve_or_create(identity, parent)
        return await self.history_payload(conversation)

    async def history_payload(self, conversation: Conversation) -> Dict[str, Any]:
        """Conversation summary with populated parties, plus all messages in order."""
        try:
            customer = await self.stores.accounts.get_customer(conversation.customer_id)
            provider = (
                await self.stores.accounts.get_provider(conversation.provider_id)
                if conversation.provider_id
                else None
            )
        except StoreError as e:
            raise ConversationUnavailable() from e

        summary = conversation.summary()
        summary["customer"] = _profile(customer, conversation.customer_id)
        summary["provider"] = _profile(provider, conversation.provider_id)
        return {
            "conversation": summary,
            "messages": [m.to_wire() for m in conversation.messages],
        }

    async def list_for_user(self, identity: Identity) -> List[Conversation]:
        try:
            return await self.stores.conversations.list_for_user(identity.user_id)
        except StoreError as e:
            raise ConversationUnavailable() from e


def _profile(account: Optional[Account], fallback_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if account is not None:
        return account.public_profile()
    if fallback_id:
        return {"id": fallback_id}
    return None
