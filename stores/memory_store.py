"""
In-process store backend.

Documents are copied on the way in and out so callers never share state
with the store, the same way a real document database behaves.
"""
import asyncio
from typing import Dict, List, Optional

from loguru import logger

from .base import (
    AccountStore,
    BundleStore,
    ConversationStore,
    DuplicateParentError,
    QuickChatStore,
    ServiceRequestStore,
    StoreBackend,
    StoreError,
)
from .models import (
    Account,
    Bundle,
    Conversation,
    Message,
    ParentRef,
    QuickChatTemplate,
    Role,
    ServiceRequest,
    parent_key,
)


class _LatencyMixin:
    """Optional artificial delay so tests can force interleaving."""

    latency: float = 0.0

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)


class InMemoryAccountStore(_LatencyMixin, AccountStore):
    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._customers: Dict[str, Account] = {}
        self._providers: Dict[str, Account] = {}

    def add(self, account: Account) -> Account:
        target = self._customers if account.role == Role.CUSTOMER else self._providers
        target[account.id] = account.model_copy(deep=True)
        return account

    async def get_customer(self, user_id: str) -> Optional[Account]:
        await self._io()
        account = self._customers.get(user_id)
        return account.model_copy(deep=True) if account else None

    async def get_provider(self, user_id: str) -> Optional[Account]:
        await self._io()
        account = self._providers.get(user_id)
        return account.model_copy(deep=True) if account else None


class InMemoryServiceRequestStore(_LatencyMixin, ServiceRequestStore):
    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._requests: Dict[str, ServiceRequest] = {}

    def add(self, request: ServiceRequest) -> ServiceRequest:
        self._requests[request.id] = request.model_copy(deep=True)
        return request

    async def get(self, request_id: str) -> Optional[ServiceRequest]:
        await self._io()
        request = self._requests.get(request_id)
        return request.model_copy(deep=True) if request else None


class InMemoryBundleStore(_LatencyMixin, BundleStore):
    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._bundles: Dict[str, Bundle] = {}

    def add(self, bundle: Bundle) -> Bundle:
        self._bundles[bundle.id] = bundle.model_copy(deep=True)
        return bundle

    async def get(self, bundle_id: str) -> Optional[Bundle]:
        await self._io()
        bundle = self._bundles.get(bundle_id)
        return bundle.model_copy(deep=True) if bundle else None


class InMemoryQuickChatStore(_LatencyMixin, QuickChatStore):
    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._templates: Dict[str, QuickChatTemplate] = {}
        self._lock = asyncio.Lock()

    def add(self, template: QuickChatTemplate) -> QuickChatTemplate:
        self._templates[template.id] = template.model_copy(deep=True)
        return template

    def peek(self, template_id: str) -> Optional[QuickChatTemplate]:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def get_owned(
        self, template_id: str, owner_id: str, owner_role: str
    ) -> Optional[QuickChatTemplate]:
        await self._io()
        template = self._templates.get(template_id)
        if not template or not template.is_active:
            return None
        if not template.is_owned_by(owner_id, owner_role):
            return None
        return template.model_copy(deep=True)

    async def list_owned(self, owner_id: str, owner_role: str) -> List[QuickChatTemplate]:
        await self._io()
        owned = [
            t for t in self._templates.values()
            if t.is_active and t.is_owned_by(owner_id, owner_role)
        ]
        owned.sort(key=lambda t: (t.usage_count, t.created_at), reverse=True)
        return [t.model_copy(deep=True) for t in owned]

    async def increment_usage(self, template_id: str) -> Optional[QuickChatTemplate]:
        await self._io()
        async with self._lock:
            template = self._templates.get(template_id)
            if not template:
                return None
            template.usage_count += 1
            return template.model_copy(deep=True)


class InMemoryConversationStore(_LatencyMixin, ConversationStore):
    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._conversations: Dict[str, Conversation] = {}
        # parent key -> conversation id; plays the role of a unique index
        self._by_parent: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def count(self) -> int:
        return len(self._conversations)

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        await self._io()
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def find_by_parent(self, parent: ParentRef) -> Optional[Conversation]:
        await self._io()
        conversation_id = self._by_parent.get(parent_key(parent))
        if not conversation_id:
            return None
        return self._conversations[conversation_id].model_copy(deep=True)

    async def create(self, conversation: Conversation) -> Conversation:
        await self._io()
        key = parent_key(conversation.parent)
        async with self._lock:
            if key in self._by_parent:
                raise DuplicateParentError(conversation.parent)
            if conversation.id in self._conversations:
                raise StoreError(f"duplicate conversation id {conversation.id}")
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
            self._by_parent[key] = conversation.id
        logger.debug(f"Conversation stored: {conversation.id} ({key})")
        return conversation.model_copy(deep=True)

    async def append_message(self, conversation_id: str, message: Message) -> Conversation:
        await self._io()
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if not conversation:
                raise StoreError(f"conversation {conversation_id} not found")
            conversation.messages.append(message.model_copy(deep=True))
            conversation.last_message = message.content
            conversation.last_message_at = message.timestamp
            return conversation.model_copy(deep=True)

    async def list_for_user(self, user_id: str) -> List[Conversation]:
        await self._io()
        matches = [
            c for c in self._conversations.values()
            if c.customer_id == user_id or c.provider_id == user_id
        ]
        matches.sort(key=lambda c: c.last_message_at or c.created_at, reverse=True)
        return [c.model_copy(deep=True) for c in matches]


def create_memory_backend(latency: float = 0.0) -> StoreBackend:
    return StoreBackend(
        accounts=InMemoryAccountStore(latency),
        service_requests=InMemoryServiceRequestStore(latency),
        bundles=InMemoryBundleStore(latency),
        quick_chats=InMemoryQuickChatStore(latency),
        conversations=InMemoryConversationStore(latency),
    )
