"""Test suite for the API endpoints."""

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from slumini_chat.api.app import app, get_chat_service
from slumini_chat.repositories.local import LocalRepository
from slumini_chat.repositories.remote import RemoteRepository
from slumini_chat.services.chat import ChatService
from slumini_chat.stores.base import StoreError
from slumini_chat.stores.local import LocalStorage
from slumini_chat.stores.memory import InMemoryDocumentStore

STUDENT = {"id": "s1@x.edu", "name": "Sam", "role": "student"}
ALUMNI = {"id": "a1@y.com", "name": "Ada", "role": "alumni"}


@pytest.fixture
def service():
    """Fresh remote-backed service per test."""
    chat_service = ChatService(RemoteRepository(InMemoryDocumentStore()))
    app.dependency_overrides[get_chat_service] = lambda: chat_service
    yield chat_service
    app.dependency_overrides.clear()


def client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_send_and_reply(service):
    """Test the hello / reply scenario over HTTP."""
    async with client() as http:
        response = await http.post("/messages", json={"sender": STUDENT, "recipient": ALUMNI, "body": "Hello"})
        assert response.status_code == 200
        data = response.json()
        assert data["conversation_id"] == "s1@x.edu_a1@y.com"
        assert data["message_id"]

        response = await http.post("/messages", json={"sender": ALUMNI, "recipient": STUDENT, "body": "Hi there"})
        assert response.status_code == 200

        response = await http.get("/conversations/s1@x.edu_a1@y.com/messages")
        assert response.status_code == 200
        assert [m["body"] for m in response.json()] == ["Hello", "Hi there"]

        response = await http.get("/conversations/s1@x.edu_a1@y.com")
        assert response.status_code == 200
        summary = response.json()
        assert summary["last_message"] == "Hi there"
        assert summary["unread_count"] == {"student": 1, "alumni": 0}


@pytest.mark.asyncio
async def test_error_handling(service):
    """Test validation and domain errors map to status codes."""
    async with client() as http:
        # Missing body
        response = await http.post("/messages", json={"sender": STUDENT, "recipient": ALUMNI})
        assert response.status_code == 422

        # Unknown role
        bad = dict(STUDENT, role="mentor")
        response = await http.post("/messages", json={"sender": bad, "recipient": ALUMNI, "body": "hi"})
        assert response.status_code == 422

        # Blank body
        response = await http.post("/messages", json={"sender": STUDENT, "recipient": ALUMNI, "body": "  "})
        assert response.status_code == 400

        # Two alumni
        other = dict(ALUMNI, id="b2@y.com")
        response = await http.post("/messages", json={"sender": ALUMNI, "recipient": other, "body": "hi"})
        assert response.status_code == 400


@pytest.mark.asyncio
async def test_get_nonexistent_conversation(service):
    """Test unknown conversations return 404."""
    async with client() as http:
        response = await http.get("/conversations/nobody_nowhere")
        assert response.status_code == 404

        response = await http.post("/conversations/nobody_nowhere/read", json={"role": "student"})
        assert response.status_code == 404

        response = await http.get("/conversations/nobody_nowhere/messages")
        assert response.status_code == 200
        assert response.json() == []


@pytest.mark.asyncio
async def test_inbox_and_mark_read(service):
    """Test inbox listing and unread reset."""
    async with client() as http:
        for body in ["one", "two", "three"]:
            await http.post("/messages", json={"sender": ALUMNI, "recipient": STUDENT, "body": body})

        response = await http.get("/conversations", params={"user_id": "s1@x.edu", "role": "student"})
        assert response.status_code == 200
        inbox = response.json()
        assert len(inbox) == 1
        assert inbox[0]["unread_count"]["student"] == 3

        response = await http.post("/conversations/s1@x.edu_a1@y.com/read", json={"role": "student"})
        assert response.status_code == 204

        response = await http.get("/conversations", params={"user_id": "s1@x.edu", "role": "student"})
        assert response.json()[0]["unread_count"]["student"] == 0

        response = await http.get("/conversations", params={"user_id": "s1@x.edu"})
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_send_failure_is_retryable(service):
    """Test backend failures surface as 503."""

    class DownStore(InMemoryDocumentStore):
        async def add(self, collection, data):
            raise StoreError("backend unavailable")

    failing = ChatService(RemoteRepository(DownStore()))
    app.dependency_overrides[get_chat_service] = lambda: failing
    async with client() as http:
        response = await http.post("/messages", json={"sender": STUDENT, "recipient": ALUMNI, "body": "Hello"})
        assert response.status_code == 503


@pytest.mark.asyncio
async def test_clear_depends_on_backend(service):
    """Test deletion is refused by the shared store and allowed locally."""
    async with client() as http:
        response = await http.delete("/conversations/s1@x.edu_a1@y.com")
        assert response.status_code == 405

        local = ChatService(LocalRepository(LocalStorage()))
        app.dependency_overrides[get_chat_service] = lambda: local
        student = {"id": "3", "name": "Sam", "role": "student"}
        alumni = {"id": "7", "name": "Ada", "role": "alumni"}
        response = await http.post("/messages", json={"sender": student, "recipient": alumni, "body": "Hello"})
        assert response.json()["conversation_id"] == "portal_chat_7_3"

        response = await http.delete("/conversations/portal_chat_7_3")
        assert response.status_code == 204
        response = await http.get("/conversations/portal_chat_7_3/messages")
        assert response.json() == []


@pytest.mark.asyncio
async def test_metrics(service):
    """Test the Prometheus endpoint exposes the messaging counters."""
    async with client() as http:
        await http.post("/messages", json={"sender": STUDENT, "recipient": ALUMNI, "body": "Hello"})
        response = await http.get("/metrics")
        assert response.status_code == 200
        assert "messages_sent_total" in response.text


def test_stream_sends_snapshots(service):
    """Test the WebSocket pushes the current message list."""
    test_client = TestClient(app)
    response = test_client.post("/messages", json={"sender": STUDENT, "recipient": ALUMNI, "body": "Hello"})
    assert response.status_code == 200

    with test_client.websocket_connect("/conversations/s1@x.edu_a1@y.com/stream") as websocket:
        payload = websocket.receive_json()
        assert payload["type"] == "messages"
        assert [m["body"] for m in payload["data"]] == ["Hello"]


def test_foreign_conversation_ids_on_local_backend():
    """Test shared-store ids are refused by the local backend, not retried."""
    local = ChatService(LocalRepository(LocalStorage()))
    app.dependency_overrides[get_chat_service] = lambda: local
    try:
        test_client = TestClient(app)
        response = test_client.get("/conversations/s1@x.edu_a1@y.com/messages")
        assert response.status_code == 404
        response = test_client.get("/conversations/s1@x.edu_a1@y.com")
        assert response.status_code == 404

        with test_client.websocket_connect("/conversations/s1@x.edu_a1@y.com/stream") as websocket:
            payload = websocket.receive_json()
            assert payload["type"] == "error"
            assert "s1@x.edu_a1@y.com" in payload["detail"]
    finally:
        app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_mark_read_failure_is_retryable(service):
    """Test a failed counter reset surfaces as 503."""

    class ReadOnlyStore(InMemoryDocumentStore):
        async def update(self, path, changes, last_update_time=None):
            raise StoreError("backend unavailable")

    store = ReadOnlyStore()
    await store.create("conversations/s1@x.edu_a1@y.com", {"participants": {}})
    failing = ChatService(RemoteRepository(store))
    app.dependency_overrides[get_chat_service] = lambda: failing
    async with client() as http:
        response = await http.post("/conversations/s1@x.edu_a1@y.com/read", json={"role": "student"})
        assert response.status_code == 503
