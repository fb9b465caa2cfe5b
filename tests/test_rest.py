"""Integration tests for REST API endpoints.

Uses httpx AsyncClient with ASGITransport for async HTTP testing.
MockOrchestrator for /chat endpoints; SQLite (conftest fixtures) for
DB-backed endpoints.
"""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chatrelay.api.rest import create_app
from chatrelay.chat.capabilities import ModelCatalog
from chatrelay.chat.reframer import ResponseChannel
from chatrelay.chat.schemas import Turn

# ---------------------------------------------------------------------------
# Mock orchestrator
# ---------------------------------------------------------------------------


class MockOrchestrator:
    """Returns canned channels or error strings, tracks call history."""

    def __init__(self) -> None:
        self.chat_calls = []
        self.stop_calls = []
        self.fragments = ["Hel", "lo"]
        self.error: str | None = None
        self.active: set[str] = set()

    async def chat(self, request):
        self.chat_calls.append(request)
        if self.error is not None:
            return self.error
        channel = ResponseChannel()
        for fragment in self.fragments:
            channel.push(fragment)
        channel.close()
        return channel

    def stop(self, conversation_id):
        self.stop_calls.append(conversation_id)
        return conversation_id in self.active


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_orchestrator():
    return MockOrchestrator()


@pytest.fixture
def catalog(settings):
    return ModelCatalog(settings)


@pytest.fixture
def app(mock_orchestrator, store, catalog, database):
    return create_app(mock_orchestrator, store, catalog, database)


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client using httpx ASGITransport."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


CHAT_BODY = {
    "context_id": "c1",
    "supplierName": "ollama",
    "model": "llama",
    "parameters": "3b",
    "user_content": "hello",
}


# ---------------------------------------------------------------------------
# Chat endpoint tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chat_streams_reply(client, mock_orchestrator):
    """POST /chat -> 200 event stream with the concatenated fragments."""
    resp = await client.post("/chat", json=CHAT_BODY)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.text == "Hello"

    request = mock_orchestrator.chat_calls[0]
    assert request.context_id == "c1"
    assert request.supplier_name == "ollama"


@pytest.mark.asyncio
async def test_chat_error_string_is_plain_text(client, mock_orchestrator):
    """Pre-stream failure -> 200 text/plain carrying the localized message."""
    mock_orchestrator.error = "Model connection failed: refused"
    resp = await client.post("/chat", json=CHAT_BODY)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.text == "Model connection failed: refused"


@pytest.mark.asyncio
async def test_chat_invalid_json(client, mock_orchestrator):
    resp = await client.post("/chat", content=b"{not json", headers={"content-type": "application/json"})

    assert resp.status_code == 400
    assert mock_orchestrator.chat_calls == []


@pytest.mark.asyncio
async def test_chat_missing_fields(client, mock_orchestrator):
    resp = await client.post("/chat", json={"context_id": "c1"})

    assert resp.status_code == 400
    assert "Invalid chat request" in resp.json()["error"]
    assert mock_orchestrator.chat_calls == []


# ---------------------------------------------------------------------------
# Stop endpoint tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stop_active_turn(client, mock_orchestrator):
    mock_orchestrator.active.add("c1")
    resp = await client.post("/chat/stop", json={"context_id": "c1"})

    assert resp.status_code == 200
    assert resp.json() == {"status": "stopping", "context_id": "c1"}
    assert mock_orchestrator.stop_calls == ["c1"]


@pytest.mark.asyncio
async def test_stop_idle_conversation(client):
    resp = await client.post("/chat/stop", json={"context_id": "c2"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "idle"


@pytest.mark.asyncio
async def test_stop_requires_context_id(client, mock_orchestrator):
    resp = await client.post("/chat/stop", json={})

    assert resp.status_code == 400
    assert mock_orchestrator.stop_calls == []


# ---------------------------------------------------------------------------
# Transcript and usage tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_turns(client, store):
    user = Turn(conversation_id="c1", role="user", content="hello")
    reply = Turn(conversation_id="c1", role="assistant", content="Hi")
    await store.save_chat_history("c1", user, reply)

    resp = await client.get("/chat/c1/turns")

    assert resp.status_code == 200
    turns = resp.json()["turns"]
    assert [t["role"] for t in turns] == ["user", "assistant"]
    assert turns[1]["id"] == reply.id
    assert turns[1]["content"] == "Hi"


@pytest.mark.asyncio
async def test_list_turns_unknown_conversation(client):
    resp = await client.get("/chat/unknown/turns")

    assert resp.status_code == 200
    assert resp.json() == {"turns": []}


@pytest.mark.asyncio
async def test_list_turns_store_failure(client, store):
    store.list_turns = AsyncMock(side_effect=RuntimeError("db down"))
    resp = await client.get("/chat/c1/turns")

    assert resp.status_code == 500
    assert resp.json()["error"] == "db down"


@pytest.mark.asyncio
async def test_model_usage(client, catalog):
    catalog.record_usage("ollama", "llama:3b")
    catalog.record_usage("ollama", "llama:3b")
    catalog.record_usage("deepseek", "deepseek-chat")

    resp = await client.get("/models/usage")

    assert resp.status_code == 200
    assert resp.json()["usage"] == [
        {"supplier_name": "ollama", "model": "llama:3b", "total": 2},
        {"supplier_name": "deepseek", "model": "deepseek-chat", "total": 1},
    ]


# ---------------------------------------------------------------------------
# Health endpoint test
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}
