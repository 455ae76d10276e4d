"""
Document mapping for the MongoDB backend. No server needed.
"""
from datetime import datetime, timezone

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from stores.base import StoreError
from stores.models import BundleRef, Conversation, Message, Role, ServiceRequestRef
from stores.mongo_store import (
    _guard,
    account_from_doc,
    bundle_from_doc,
    conversation_from_doc,
    conversation_to_doc,
    service_request_from_doc,
    template_from_doc,
)


def test_account_mapping_uses_collection_role():
    oid = ObjectId()
    account = account_from_doc(
        {"_id": oid, "firstName": "Pam", "lastName": "Ruiz", "businessNameRegistered": "Ruiz Plumbing"},
        Role.PROVIDER,
    )
    assert account.id == str(oid)
    assert account.role == Role.PROVIDER
    assert account.public_profile()["businessName"] == "Ruiz Plumbing"


def test_service_request_and_bundle_mapping():
    customer, provider, participant = ObjectId(), ObjectId(), ObjectId()

    request = service_request_from_doc({"_id": ObjectId(), "customer": customer, "provider": None})
    assert request.customer_id == str(customer)
    assert request.authorized_ids() == {str(customer)}

    bundle = bundle_from_doc({
        "_id": ObjectId(),
        "creator": customer,
        "provider": {"_id": provider, "businessName": "populated"},
        "participants": [{"customer": customer}, {"customer": participant}, {"status": "left"}],
    })
    assert bundle.provider_id == str(provider)
    assert bundle.participant_ids == [str(customer), str(participant)]
    assert str(participant) not in bundle.authorized_ids()


def test_template_mapping():
    owner = ObjectId()
    template = template_from_doc({
        "_id": ObjectId(),
        "createdBy": owner,
        "createdByRole": "provider",
        "content": "On my way",
        "usageCount": 5,
    })
    assert template.is_owned_by(str(owner), "provider")
    assert template.usage_count == 5
    assert template.is_active is True


def test_conversation_doc_carries_only_its_parent_field():
    customer, provider = str(ObjectId()), str(ObjectId())
    conversation = Conversation(
        parent=BundleRef(id=str(ObjectId())),
        customer_id=customer,
        provider_id=provider,
        messages=[Message(sender_id=customer, sender_role=Role.CUSTOMER, content="hi")],
    )

    doc = conversation_to_doc(conversation)

    assert "bundleId" in doc
    assert "requestId" not in doc
    assert isinstance(doc["bundleId"], ObjectId)
    assert isinstance(doc["customerId"], ObjectId)
    assert doc["messages"][0]["senderRole"] == "customer"

    restored = conversation_from_doc(doc)
    assert restored.parent == conversation.parent
    assert restored.customer_id == customer
    assert restored.messages[0].content == "hi"
    assert restored.messages[0].id == conversation.messages[0].id


def test_conversation_from_legacy_doc():
    request, customer = ObjectId(), ObjectId()
    stamp = datetime(2024, 5, 1, tzinfo=timezone.utc)
    conversation = conversation_from_doc({
        "_id": ObjectId(),
        "requestId": request,
        "customerId": customer,
        "providerId": None,
        "messages": [{"senderId": customer, "senderRole": "customer", "content": "hello", "timestamp": stamp}],
        "lastMessage": "hello",
        "lastMessageAt": stamp,
    })
    assert conversation.parent == ServiceRequestRef(id=str(request))
    assert conversation.provider_id is None
    assert conversation.messages[0].timestamp == stamp
    assert conversation.messages[0].id


def test_conversation_without_parent_is_a_store_error():
    with pytest.raises(StoreError):
        conversation_from_doc({"_id": ObjectId(), "customerId": ObjectId()})


def test_driver_errors_become_store_errors():
    with pytest.raises(StoreError):
        with _guard("lookup"):
            raise PyMongoError("connection refused")
