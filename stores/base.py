"""
Storage collaborator interfaces consumed by the chat gateway.

Every method is a coroutine: each call is a suspension point where other
connections' events may run.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from .models import (
    Account,
    Bundle,
    Conversation,
    Message,
    ParentRef,
    QuickChatTemplate,
    ServiceRequest,
)


class StoreError(Exception):
    """Backend failure (connection lost, write not acknowledged, ...)."""


class DuplicateParentError(StoreError):
    """A conversation already exists for this parent reference."""

    def __init__(self, parent: ParentRef):
        super().__init__(f"conversation already exists for {parent.kind} {parent.id}")
        self.parent = parent


class AccountStore(ABC):
    """Accounts are partitioned by role across two collections."""

    @abstractmethod
    async def get_customer(self, user_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    async def get_provider(self, user_id: str) -> Optional[Account]:
        ...

    async def get_any(self, user_id: str) -> Optional[Account]:
        account = await self.get_customer(user_id)
        if account is None:
            account = await self.get_provider(user_id)
        return account


class ServiceRequestStore(ABC):
    @abstractmethod
    async def get(self, request_id: str) -> Optional[ServiceRequest]:
        ...


class BundleStore(ABC):
    @abstractmethod
    async def get(self, bundle_id: str) -> Optional[Bundle]:
        ...


class QuickChatStore(ABC):
    @abstractmethod
    async def get_owned(
        self, template_id: str, owner_id: str, owner_role: str
    ) -> Optional[QuickChatTemplate]:
        """Active template with this id owned by exactly (owner_id, owner_role)."""

    @abstractmethod
    async def list_owned(self, owner_id: str, owner_role: str) -> List[QuickChatTemplate]:
        """Active templates of the owner, most used first, then newest."""

    @abstractmethod
    async def increment_usage(self, template_id: str) -> Optional[QuickChatTemplate]:
        ...


class ConversationStore(ABC):
    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def find_by_parent(self, parent: ParentRef) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def create(self, conversation: Conversation) -> Conversation:
        """Insert a new conversation.

        Raises DuplicateParentError if one already exists for the parent.
        """

    @abstractmethod
    async def append_message(self, conversation_id: str, message: Message) -> Conversation:
        """Append `message` and set the last-message summary in one write."""

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[Conversation]:
        """Conversations where the user is customer or provider, newest activity first."""


@dataclass
class StoreBackend:
    """The set of collaborator stores the gateway is wired with."""
    accounts: AccountStore
    service_requests: ServiceRequestStore
    bundles: BundleStore
    quick_chats: QuickChatStore
    conversations: ConversationStore

    async def close(self) -> None:
        return None
