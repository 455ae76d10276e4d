"""
End-to-end tests through the FastAPI application and its WebSocket route.
"""
import pytest
from fastapi.testclient import TestClient

from config import AuthConfig, GatewayConfig, MarketChatConfig
from chat_gateway.app import create_app

from conftest import CUSTOMER_ID, PARTICIPANT_ID, PROVIDER_ID, REQUEST_ID, BUNDLE_ID, TEST_SECRET


@pytest.fixture
def app_config():
    return MarketChatConfig(
        auth=AuthConfig(secret_key=TEST_SECRET),
        gateway=GatewayConfig(websocket_path="/ws"),
    )


@pytest.fixture
def app(app_config, backend):
    return create_app(config=app_config, backend=backend)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def test_root_and_health(client):
    root = client.get("/").json()
    assert root["status"] == "running"
    assert root["websocket"] == "/ws"

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["gateway_ready"] is True


def test_status_before_startup_uses_error_body(app):
    response = TestClient(app).get("/gateway/status")
    assert response.status_code == 503
    assert response.json() == {
        "status": "error",
        "error": {"code": "http_error", "message": "Gateway not initialized"},
    }


def test_status_reports_connections(client, make_token):
    with client.websocket_connect(f"/ws?token={make_token(CUSTOMER_ID)}") as ws:
        ws.receive_json()
        status = client.get("/gateway/status").json()
        assert status["status"] == "running"
        assert status["connections"] == 1
        assert status["presence"] == 1
        assert status["websocket_endpoint"] == "/ws"
        assert any(e["event"] == "session.authenticated" for e in status["recent_events"])


def test_unauthenticated_welcome_then_explicit_auth(client, make_token):
    with client.websocket_connect("/ws") as ws:
        welcome = ws.receive_json()
        assert welcome["type"] == "welcome"
        assert "userId" not in welcome["data"]

        ws.send_json({"type": "join_conversation", "data": {"requestId": REQUEST_ID}})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["data"]["code"] == "authentication_required"

        ws.send_json({"event": "authenticate", "data": make_token(CUSTOMER_ID)})
        authenticated = ws.receive_json()
        assert authenticated["type"] == "authenticated"
        assert authenticated["data"]["userId"] == CUSTOMER_ID

        ws.send_text("hello?")
        pong = ws.receive_json()
        assert pong["type"] == "pong"
        assert pong["data"]["yourMessage"] == "hello?"


def test_quick_chat_between_customer_and_provider(client, backend, make_token):
    customer_headers = {"Authorization": f"Bearer {make_token(CUSTOMER_ID)}"}
    provider_headers = {"Authorization": f"Bearer {make_token(PROVIDER_ID)}"}

    with client.websocket_connect("/ws", headers=customer_headers) as c_ws, \
            client.websocket_connect("/ws", headers=provider_headers) as p_ws:
        assert c_ws.receive_json()["data"]["userId"] == CUSTOMER_ID
        assert p_ws.receive_json()["data"]["userId"] == PROVIDER_ID

        c_ws.send_json({"type": "join_conversation", "data": {"requestId": REQUEST_ID}})
        joined = c_ws.receive_json()
        assert joined["type"] == "joined_conversation"
        assert c_ws.receive_json()["type"] == "conversation_history"

        p_ws.send_json({"event": "send_quick_chat", "data": {"requestId": REQUEST_ID, "quickChatId": "Q1"}})
        sent = p_ws.receive_json()
        assert sent["type"] == "message_sent"

        new_message = c_ws.receive_json()
        assert new_message["type"] == "new_message"
        assert new_message["data"]["message"]["content"] == "On my way"
        assert new_message["data"]["message"]["id"] == sent["data"]["savedMessage"]["id"]

        updated = c_ws.receive_json()
        assert updated["type"] == "conversation_updated"
        assert updated["data"]["conversationId"] == joined["data"]["conversationId"]

    assert backend.quick_chats.peek("Q1").usage_count == 4
    assert backend.conversations.count() == 1


def test_bundle_participant_denied(client, backend, make_token):
    with client.websocket_connect(f"/ws?token={make_token(PARTICIPANT_ID)}") as ws:
        ws.receive_json()
        ws.send_json({"type": "get_conversation", "data": {"bundleId": BUNDLE_ID}})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["data"]["code"] == "access_denied"
    assert backend.conversations.count() == 0


def test_disconnect_removes_presence(client, app, make_token):
    with client.websocket_connect(f"/ws?token={make_token(PROVIDER_ID)}") as ws:
        ws.receive_json()
        ws.send_json({"type": "ping"})
        ws.receive_json()
        assert app.state.gateway.presence.lookup(PROVIDER_ID) is not None

    # Closing is processed by the server loop; a follow-up request syncs with it.
    client.get("/health")
    gateway = app.state.gateway
    for _ in range(50):
        if gateway.presence.lookup(PROVIDER_ID) is None:
            break
        client.get("/health")
    assert gateway.presence.lookup(PROVIDER_ID) is None
