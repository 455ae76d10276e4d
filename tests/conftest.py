"""
Shared fixtures: a seeded in-memory marketplace and fake sockets.
"""
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

# Project root on the path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

import pytest
from fastapi import WebSocketDisconnect

from stores.memory_store import create_memory_backend
from stores.models import Account, Bundle, QuickChatTemplate, Role, ServiceRequest
from chat_gateway.events import EventEmitter
from chat_gateway.identity import Identity, IdentityResolver, create_access_token
from chat_gateway.presence import PresenceRegistry
from chat_gateway.server import SessionGateway


TEST_SECRET = "test-secret-key"

CUSTOMER_ID = "C"
PROVIDER_ID = "P"
OTHER_CUSTOMER_ID = "C2"
PARTICIPANT_ID = "C3"
OTHER_PROVIDER_ID = "P2"
REQUEST_ID = "R123"
BUNDLE_ID = "B77"


class FakeWebSocket:
    """Records outbound frames; can be told to fail or to disconnect."""

    def __init__(self, incoming: Optional[List[str]] = None):
        self.accepted = False
        self.closed = False
        self.fail_sends = False
        self.sent: List[Dict[str, Any]] = []
        self._incoming = list(incoming or [])

    async def accept(self):
        self.accepted = True

    async def close(self, code: int = 1000, reason: Optional[str] = None):
        self.closed = True

    async def send_text(self, text: str):
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        self.sent.append(json.loads(text))

    async def receive_text(self) -> str:
        if not self._incoming:
            raise WebSocketDisconnect(code=1000)
        return self._incoming.pop(0)

    def types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [frame["data"] for frame in self.sent if frame["type"] == event_type]

    def last(self, event_type: str) -> Dict[str, Any]:
        frames = self.of_type(event_type)
        assert frames, f"no {event_type} frame in {self.types()}"
        return frames[-1]

    def clear(self):
        self.sent.clear()


def seed_marketplace(backend) -> None:
    backend.accounts.add(Account(id=CUSTOMER_ID, role=Role.CUSTOMER, first_name="Cora", last_name="Diaz"))
    backend.accounts.add(Account(id=OTHER_CUSTOMER_ID, role=Role.CUSTOMER, first_name="Eli", last_name="Fox"))
    backend.accounts.add(Account(id=PARTICIPANT_ID, role=Role.CUSTOMER, first_name="Gus", last_name="Hale"))
    backend.accounts.add(
        Account(id=PROVIDER_ID, role=Role.PROVIDER, first_name="Pam", last_name="Ruiz", business_name="Ruiz Plumbing")
    )
    backend.accounts.add(
        Account(id=OTHER_PROVIDER_ID, role=Role.PROVIDER, first_name="Quinn", last_name="Sato", business_name="Sato Electric")
    )

    backend.service_requests.add(ServiceRequest(id=REQUEST_ID, customer_id=CUSTOMER_ID, provider_id=PROVIDER_ID))
    backend.service_requests.add(ServiceRequest(id="R-open", customer_id=CUSTOMER_ID, provider_id=None))
    backend.bundles.add(
        Bundle(
            id=BUNDLE_ID,
            creator_id=CUSTOMER_ID,
            provider_id=PROVIDER_ID,
            participant_ids=[CUSTOMER_ID, PARTICIPANT_ID],
        )
    )

    older = datetime.now(timezone.utc) - timedelta(days=2)
    backend.quick_chats.add(
        QuickChatTemplate(id="Q1", owner_id=PROVIDER_ID, owner_role="provider", content="On my way", usage_count=3)
    )
    backend.quick_chats.add(
        QuickChatTemplate(
            id="Q2", owner_id=PROVIDER_ID, owner_role="provider", content="Running late",
            usage_count=3, created_at=older,
        )
    )
    backend.quick_chats.add(
        QuickChatTemplate(id="Q3", owner_id=PROVIDER_ID, owner_role="provider", content="Done", usage_count=7)
    )
    backend.quick_chats.add(
        QuickChatTemplate(id="Q-off", owner_id=PROVIDER_ID, owner_role="provider", content="Old", is_active=False)
    )
    backend.quick_chats.add(
        QuickChatTemplate(id="QC", owner_id=CUSTOMER_ID, owner_role="customer", content="Thanks!")
    )


@pytest.fixture
def backend():
    stores = create_memory_backend()
    seed_marketplace(stores)
    return stores


@pytest.fixture
def slow_backend():
    """Backend whose every call yields, so concurrent callers interleave."""
    stores = create_memory_backend(latency=0.01)
    seed_marketplace(stores)
    return stores


@pytest.fixture
def make_token():
    def _make(user_id: str, secret: str = TEST_SECRET, expires_minutes: int = 60, **claims):
        return create_access_token(
            user_id, secret_key=secret, expires_minutes=expires_minutes, extra_claims=claims or None
        )
    return _make


@pytest.fixture
def customer():
    return Identity(user_id=CUSTOMER_ID, role=Role.CUSTOMER)


@pytest.fixture
def provider():
    return Identity(user_id=PROVIDER_ID, role=Role.PROVIDER)


@pytest.fixture
def identity_resolver(backend):
    return IdentityResolver(backend.accounts, secret_key=TEST_SECRET)


@pytest.fixture
def gateway(backend, identity_resolver):
    return SessionGateway(
        backend,
        identity_resolver,
        presence=PresenceRegistry(),
        event_emitter=EventEmitter(max_history=100),
    )
