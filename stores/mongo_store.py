"""
MongoDB store backend (pymongo async client).

Collection and field names follow the marketplace's existing documents:
customers, serviceproviders, servicerequests, bundles, quickchats and
conversations, with camelCase fields.
"""
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from bson import ObjectId
from loguru import logger
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

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
    BundleRef,
    Conversation,
    Message,
    ParentRef,
    QuickChatTemplate,
    Role,
    ServiceRequest,
    ServiceRequestRef,
)


def _oid(value: Optional[str]) -> Any:
    """Stored ids are ObjectIds when they look like one, plain strings otherwise."""
    if value is None:
        return None
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def _sid(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        # populated reference
        value = value.get("_id")
    return str(value) if value is not None else None


@contextmanager
def _guard(operation: str):
    try:
        yield
    except StoreError:
        raise
    except PyMongoError as e:
        logger.error(f"Mongo {operation} failed: {e}")
        raise StoreError(f"{operation} failed: {e}") from e


# ============ Document mapping ============

def account_from_doc(doc: Dict[str, Any], default_role: Role) -> Account:
    return Account(
        id=_sid(doc["_id"]),
        role=Role(doc.get("role") or default_role.value),
        first_name=doc.get("firstName", ""),
        last_name=doc.get("lastName", ""),
        business_name=doc.get("businessNameRegistered"),
        profile_image=doc.get("profileImage"),
    )


def _required_party(doc: Dict[str, Any], field: str, kind: str) -> str:
    party = _sid(doc.get(field))
    if party is None:
        raise StoreError(f"{kind} {doc.get('_id')} has no {field}")
    return party


def service_request_from_doc(doc: Dict[str, Any]) -> ServiceRequest:
    return ServiceRequest(
        id=_sid(doc["_id"]),
        customer_id=_required_party(doc, "customer", "service request"),
        provider_id=_sid(doc.get("provider")),
    )


def bundle_from_doc(doc: Dict[str, Any]) -> Bundle:
    participants = [
        _sid(p.get("customer"))
        for p in doc.get("participants") or []
        if isinstance(p, dict) and p.get("customer") is not None
    ]
    return Bundle(
        id=_sid(doc["_id"]),
        creator_id=_required_party(doc, "creator", "bundle"),
        provider_id=_sid(doc.get("provider")),
        participant_ids=participants,
    )


def template_from_doc(doc: Dict[str, Any]) -> QuickChatTemplate:
    data = {
        "id": _sid(doc["_id"]),
        "owner_id": _sid(doc.get("createdBy")),
        "owner_role": doc.get("createdByRole", ""),
        "content": doc.get("content", ""),
        "usage_count": doc.get("usageCount", 0),
        "is_active": doc.get("isActive", True),
    }
    if doc.get("createdAt"):
        data["created_at"] = doc["createdAt"]
    return QuickChatTemplate(**data)


def message_to_doc(message: Message) -> Dict[str, Any]:
    return {
        "_id": message.id,
        "senderId": _oid(message.sender_id),
        "senderRole": message.sender_role.value,
        "content": message.content,
        "quickChatId": _oid(message.quick_chat_id),
        "isQuickChat": message.is_quick_chat,
        "timestamp": message.timestamp,
    }


def message_from_doc(doc: Dict[str, Any]) -> Message:
    data = {
        "sender_id": _sid(doc.get("senderId")),
        "sender_role": Role(doc.get("senderRole")),
        "content": doc.get("content", ""),
        "quick_chat_id": _sid(doc.get("quickChatId")),
        "is_quick_chat": bool(doc.get("isQuickChat", False)),
    }
    if doc.get("_id") is not None:
        data["id"] = _sid(doc["_id"])
    if doc.get("timestamp") is not None:
        data["timestamp"] = doc["timestamp"]
    return Message(**data)


def _parent_filter(parent: ParentRef) -> Dict[str, Any]:
    return {parent.field_name: _oid(parent.id)}


def conversation_to_doc(conversation: Conversation) -> Dict[str, Any]:
    doc = {
        "_id": _oid(conversation.id),
        "customerId": _oid(conversation.customer_id),
        "providerId": _oid(conversation.provider_id),
        "messages": [message_to_doc(m) for m in conversation.messages],
        "lastMessage": conversation.last_message,
        "lastMessageAt": conversation.last_message_at,
        "isActive": conversation.is_active,
        "createdAt": conversation.created_at,
    }
    # Only the parent field is written so the partial unique index applies.
    doc.update(_parent_filter(conversation.parent))
    return doc


def conversation_from_doc(doc: Dict[str, Any]) -> Conversation:
    if doc.get("requestId") is not None:
        parent: ParentRef = ServiceRequestRef(id=_sid(doc["requestId"]))
    elif doc.get("bundleId") is not None:
        parent = BundleRef(id=_sid(doc["bundleId"]))
    else:
        raise StoreError(f"conversation {doc.get('_id')} has no parent reference")

    data = {
        "id": _sid(doc["_id"]),
        "parent": parent,
        "customer_id": _sid(doc.get("customerId")),
        "provider_id": _sid(doc.get("providerId")),
        "messages": [message_from_doc(m) for m in doc.get("messages") or []],
        "last_message": doc.get("lastMessage"),
        "last_message_at": doc.get("lastMessageAt"),
        "is_active": doc.get("isActive", True),
    }
    if doc.get("createdAt") is not None:
        data["created_at"] = doc["createdAt"]
    return Conversation(**data)


# ============ Stores ============

class MongoAccountStore(AccountStore):
    def __init__(self, db):
        self.customers = db["customers"]
        self.providers = db["serviceproviders"]

    async def get_customer(self, user_id: str) -> Optional[Account]:
        with _guard("customer lookup"):
            doc = await self.customers.find_one({"_id": _oid(user_id)})
        return account_from_doc(doc, Role.CUSTOMER) if doc else None

    async def get_provider(self, user_id: str) -> Optional[Account]:
        with _guard("provider lookup"):
            doc = await self.providers.find_one({"_id": _oid(user_id)})
        return account_from_doc(doc, Role.PROVIDER) if doc else None


class MongoServiceRequestStore(ServiceRequestStore):
    def __init__(self, db):
        self.collection = db["servicerequests"]

    async def get(self, request_id: str) -> Optional[ServiceRequest]:
        with _guard("service request lookup"):
            doc = await self.collection.find_one(
                {"_id": _oid(request_id)}, {"customer": 1, "provider": 1}
            )
        return service_request_from_doc(doc) if doc else None


class MongoBundleStore(BundleStore):
    def __init__(self, db):
        self.collection = db["bundles"]

    async def get(self, bundle_id: str) -> Optional[Bundle]:
        with _guard("bundle lookup"):
            doc = await self.collection.find_one(
                {"_id": _oid(bundle_id)},
                {"creator": 1, "provider": 1, "participants.customer": 1},
            )
        return bundle_from_doc(doc) if doc else None


class MongoQuickChatStore(QuickChatStore):
    def __init__(self, db):
        self.collection = db["quickchats"]

    async def get_owned(
        self, template_id: str, owner_id: str, owner_role: str
    ) -> Optional[QuickChatTemplate]:
        with _guard("quick chat lookup"):
            doc = await self.collection.find_one({
                "_id": _oid(template_id),
                "createdBy": _oid(owner_id),
                "createdByRole": owner_role,
                "isActive": True,
            })
        return template_from_doc(doc) if doc else None

    async def list_owned(self, owner_id: str, owner_role: str) -> List[QuickChatTemplate]:
        with _guard("quick chat listing"):
            cursor = self.collection.find({
                "createdBy": _oid(owner_id),
                "createdByRole": owner_role,
                "isActive": True,
            }).sort([("usageCount", DESCENDING), ("createdAt", DESCENDING)])
            docs = await cursor.to_list(length=None)
        return [template_from_doc(d) for d in docs]

    async def increment_usage(self, template_id: str) -> Optional[QuickChatTemplate]:
        with _guard("quick chat usage increment"):
            doc = await self.collection.find_one_and_update(
                {"_id": _oid(template_id)},
                {"$inc": {"usageCount": 1}},
                return_document=ReturnDocument.AFTER,
            )
        return template_from_doc(doc) if doc else None


class MongoConversationStore(ConversationStore):
    def __init__(self, db):
        self.collection = db["conversations"]

    async def ensure_indexes(self) -> None:
        with _guard("conversation index creation"):
            for field in ("requestId", "bundleId"):
                await self.collection.create_index(
                    [(field, ASCENDING)],
                    unique=True,
                    partialFilterExpression={field: {"$exists": True}},
                    name=f"unique_{field}",
                )
            await self.collection.create_index([("customerId", ASCENDING)])
            await self.collection.create_index([("providerId", ASCENDING)])

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        with _guard("conversation lookup"):
            doc = await self.collection.find_one({"_id": _oid(conversation_id)})
        return conversation_from_doc(doc) if doc else None

    async def find_by_parent(self, parent: ParentRef) -> Optional[Conversation]:
        with _guard("conversation lookup"):
            doc = await self.collection.find_one(_parent_filter(parent))
        return conversation_from_doc(doc) if doc else None

    async def create(self, conversation: Conversation) -> Conversation:
        with _guard("conversation insert"):
            try:
                await self.collection.insert_one(conversation_to_doc(conversation))
            except DuplicateKeyError as e:
                raise DuplicateParentError(conversation.parent) from e
        return conversation

    async def append_message(self, conversation_id: str, message: Message) -> Conversation:
        with _guard("message append"):
            doc = await self.collection.find_one_and_update(
                {"_id": _oid(conversation_id)},
                {
                    "$push": {"messages": message_to_doc(message)},
                    "$set": {"lastMessage": message.content, "lastMessageAt": message.timestamp},
                },
                return_document=ReturnDocument.AFTER,
            )
        if not doc:
            raise StoreError(f"conversation {conversation_id} not found")
        return conversation_from_doc(doc)

    async def list_for_user(self, user_id: str) -> List[Conversation]:
        uid = _oid(user_id)
        with _guard("conversation listing"):
            cursor = self.collection.find(
                {"$or": [{"customerId": uid}, {"providerId": uid}]}
            ).sort([("lastMessageAt", DESCENDING), ("createdAt", DESCENDING)])
            docs = await cursor.to_list(length=None)
        return [conversation_from_doc(d) for d in docs]


@dataclass
class MongoStoreBackend(StoreBackend):
    client: Optional[AsyncMongoClient] = None

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
            logger.info("Mongo client closed")


async def create_mongo_backend(storage_config) -> MongoStoreBackend:
    client = AsyncMongoClient(
        storage_config.mongo_uri,
        tz_aware=True,
        serverSelectionTimeoutMS=storage_config.server_selection_timeout_ms,
    )
    db = client[storage_config.database]
    conversations = MongoConversationStore(db)
    await conversations.ensure_indexes()
    logger.info(f"Mongo backend ready: database={storage_config.database}")
    return MongoStoreBackend(
        accounts=MongoAccountStore(db),
        service_requests=MongoServiceRequestStore(db),
        bundles=MongoBundleStore(db),
        quick_chats=MongoQuickChatStore(db),
        conversations=conversations,
        client=client,
    )
