"""
Domain models shared by the stores and the gateway services.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class Role(str, Enum):
    """Account role. Accounts live in one store per role."""
    CUSTOMER = "customer"
    PROVIDER = "provider"


class WireModel(BaseModel):
    """Base for models that travel over the socket with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ============ Parent references ============

class ServiceRequestRef(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["service_request"] = "service_request"
    id: str

    @property
    def field_name(self) -> str:
        return "requestId"


class BundleRef(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["bundle"] = "bundle"
    id: str

    @property
    def field_name(self) -> str:
        return "bundleId"


ParentRef = Annotated[Union[ServiceRequestRef, BundleRef], Field(discriminator="kind")]


def parent_key(parent: Union[ServiceRequestRef, BundleRef]) -> str:
    """Unique key of a parent reference; one conversation per key."""
    return f"{parent.kind}:{parent.id}"


# ============ Collaborator entities ============

class Account(WireModel):
    id: str
    role: Role
    first_name: str = ""
    last_name: str = ""
    business_name: Optional[str] = None
    profile_image: Optional[str] = None

    def public_profile(self) -> Dict[str, Any]:
        profile = {
            "id": self.id,
            "role": self.role.value,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "profileImage": self.profile_image,
        }
        if self.role == Role.PROVIDER:
            profile["businessName"] = self.business_name
        return profile


class ServiceRequest(WireModel):
    id: str
    customer_id: str
    provider_id: Optional[str] = None

    def authorized_ids(self) -> Set[str]:
        ids = {self.customer_id}
        if self.provider_id:
            ids.add(self.provider_id)
        return ids


class Bundle(WireModel):
    id: str
    creator_id: str
    provider_id: Optional[str] = None
    participant_ids: List[str] = Field(default_factory=list)

    def authorized_ids(self) -> Set[str]:
        # Participants other than the creator are not part of the chat.
        ids = {self.creator_id}
        if self.provider_id:
            ids.add(self.provider_id)
        return ids


class QuickChatTemplate(WireModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    owner_role: str
    content: str
    usage_count: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    def is_owned_by(self, user_id: str, role: str) -> bool:
        return self.owner_id == user_id and self.owner_role == role


# ============ Conversations ============

class Message(WireModel):
    """Embedded chat message. Never mutated after it is appended."""
    id: str = Field(default_factory=new_id)
    sender_id: str
    sender_role: Role
    content: str
    quick_chat_id: Optional[str] = None
    is_quick_chat: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class Conversation(WireModel):
    id: str = Field(default_factory=new_id)
    parent: ParentRef
    customer_id: str
    provider_id: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def request_id(self) -> Optional[str]:
        return self.parent.id if isinstance(self.parent, ServiceRequestRef) else None

    @property
    def bundle_id(self) -> Optional[str]:
        return self.parent.id if isinstance(self.parent, BundleRef) else None

    def other_party(self, sender_role: Role) -> Optional[str]:
        """User to notify when `sender_role` posts; None if nobody is assigned."""
        if sender_role == Role.CUSTOMER:
            return self.provider_id
        return self.customer_id

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "requestId": self.request_id,
            "bundleId": self.bundle_id,
            "customerId": self.customer_id,
            "providerId": self.provider_id,
            "lastMessage": self.last_message,
            "lastMessageAt": self.last_message_at.isoformat() if self.last_message_at else None,
            "isActive": self.is_active,
        }
