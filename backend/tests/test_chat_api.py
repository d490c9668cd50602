"""Tests for the HTTP API using FastAPI's TestClient and dependency overrides."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from chat_engine.chats import messages_collection
from chat_engine.errors import WebSearchError
from chat_engine.main import app
from chat_engine.services import (
    get_blob_storage,
    get_codec,
    get_completion_client,
    get_memory_client,
    get_store,
    get_web_search_client,
)
from chat_engine.store.blob_storage import InMemoryBlobStorage
from chat_engine.store.memory_store import InMemoryDocumentStore
from chat_engine.utils.codec import PlainTextCodec
from chat_engine.utils.serialization import NDJSONStreamDecoder
from tests.fakes.fake_llm import FakeCompletionClient, pipeline_script, provider_failure
from tests.fakes.fake_search import MARS_RESULTS, FakeWebSearch

ALICE = {"X-User-Id": "alice"}
MALLORY = {"X-User-Id": "mallory"}


class Backend:
    """The collaborators wired into the app for one test."""

    def __init__(self):
        self.store = InMemoryDocumentStore()
        self.blob_storage = InMemoryBlobStorage()
        self.completion_client = FakeCompletionClient()
        self.web_search = FakeWebSearch(MARS_RESULTS)


@pytest.fixture
def backend():
    return Backend()


@pytest.fixture
def client(backend):
    app.dependency_overrides[get_store] = lambda: backend.store
    app.dependency_overrides[get_blob_storage] = lambda: backend.blob_storage
    app.dependency_overrides[get_codec] = lambda: PlainTextCodec()
    app.dependency_overrides[get_completion_client] = lambda: backend.completion_client
    app.dependency_overrides[get_memory_client] = lambda: FakeCompletionClient()
    app.dependency_overrides[get_web_search_client] = lambda: backend.web_search
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def create_chat(client, **fields) -> str:
    body = {"title": "Rovers", "memoryStrategy": "simple", **fields}
    response = client.post("/api/chats", json=body, headers=ALICE)
    assert response.status_code == 200
    return response.json()["id"]


def test_root(client):
    assert client.get("/").status_code == 200


def test_identity_is_required(client):
    response = client.post("/api/chats", json={"title": "x"})
    assert response.status_code == 401


def test_create_chat_uses_camel_case(client):
    response = client.post("/api/chats", json={"title": "Rovers", "participants": ["bob"]}, headers=ALICE)
    body = response.json()
    assert body["createdBy"] == "alice"
    assert body["participants"] == ["alice", "bob"]
    assert body["settings"]["thinkingStepsVisible"] is True


def test_advanced_turn_streams_ndjson(client, backend):
    backend.completion_client.responses = pipeline_script(answer="Streamed answer")
    chat_id = create_chat(client)

    response = client.post(
        "/api/chat/advanced",
        json={"chatId": chat_id, "message": "Hello", "advancedThinking": True},
        headers=ALICE,
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    decoder = NDJSONStreamDecoder()
    events = decoder.feed(response.text) + decoder.close()
    assert [e["type"] for e in events] == ["thinking_step"] * 4 + ["final_response"]
    assert events[-1]["response"] == "Streamed answer"


def test_chat_setting_selects_advanced_mode(client, backend):
    """Without advancedThinking in the request the chat's own setting decides."""
    backend.completion_client.responses = pipeline_script()
    chat_id = create_chat(client, advancedThinkingEnabled=True)

    response = client.post("/api/chat/advanced", json={"chatId": chat_id, "message": "Hello"}, headers=ALICE)
    assert response.headers["content-type"].startswith("application/x-ndjson")


def test_simple_turn_returns_json(client, backend):
    backend.completion_client.responses = ["Plain answer"]
    chat_id = create_chat(client)

    response = client.post(
        "/api/chat/advanced",
        json={"chatId": chat_id, "message": "Hello", "advancedThinking": False},
        headers=ALICE,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "final_response"
    assert body["response"] == "Plain answer"
    assert body["processingMetadata"]["advancedMode"] is False


def test_simple_turn_failure_returns_structured_error(client, backend):
    backend.completion_client.responses = [provider_failure(503)]
    chat_id = create_chat(client)

    response = client.post(
        "/api/chat/advanced",
        json={"chatId": chat_id, "message": "Hello", "advancedThinking": False},
        headers=ALICE,
    )

    assert response.status_code == 500
    body = response.json()
    assert body["type"] == "error"
    assert body["thinkingSteps"] == []
    assert body["processingMetadata"]["langGraphState"] == "failed"


def test_non_participant_is_forbidden(client, backend):
    chat_id = create_chat(client)

    response = client.post(
        "/api/chat/advanced", json={"chatId": chat_id, "message": "Hello", "advancedThinking": True}, headers=MALLORY,
    )

    assert response.status_code == 403
    assert backend.completion_client.calls == []


def test_unknown_chat_is_not_found(client):
    response = client.post("/api/chat/advanced", json={"chatId": "nope", "message": "Hello"}, headers=ALICE)
    assert response.status_code == 404


def test_get_and_update_chat_config(client):
    chat_id = create_chat(client)

    response = client.get("/api/chat/advanced", params={"chat_id": chat_id}, headers=ALICE)
    assert response.status_code == 200
    body = response.json()
    assert body["chatConfig"]["memoryStrategy"] == "simple"
    assert body["memoryStats"]["totalMemoryRecords"] == 0

    response = client.put(
        "/api/chat/advanced",
        json={"chatId": chat_id, "config": {"memoryStrategy": "summary", "settings": {"webSearchEnabled": True}}},
        headers=ALICE,
    )
    assert response.status_code == 200
    config = response.json()["chatConfig"]
    assert config["memoryStrategy"] == "summary"
    assert config["settings"]["webSearchEnabled"] is True
    assert config["settings"]["thinkingStepsVisible"] is True


def test_update_config_by_non_participant_is_forbidden(client):
    chat_id = create_chat(client)
    response = client.put(
        "/api/chat/advanced", json={"chatId": chat_id, "config": {"title": "mine"}}, headers=MALLORY,
    )
    assert response.status_code == 403


def test_message_trace(client, backend):
    backend.completion_client.responses = pipeline_script()
    chat_id = create_chat(client)
    client.post(
        "/api/chat/advanced", json={"chatId": chat_id, "message": "Hello", "advancedThinking": True}, headers=ALICE,
    )

    records = asyncio.run(backend.store.query(messages_collection(chat_id), filters={"role": "assistant"}))
    message_id = records[0]["id"]

    response = client.get(f"/api/chats/{chat_id}/messages/{message_id}/trace", headers=ALICE)
    body = response.json()
    assert body["langGraphState"] == "completed"
    assert body["validOrder"] is True
    assert [s["stepType"] for s in body["thinkingSteps"]] == ["analysis", "planning", "synthesis", "reasoning"]

    assert client.get(f"/api/chats/{chat_id}/messages/missing/trace", headers=ALICE).status_code == 404


def test_plain_completion_stream(client, backend):
    backend.completion_client.stream_chunks = ["Hel", "lo"]

    response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]}, headers=ALICE)

    assert response.status_code == 200
    assert response.text == "Hello"


def test_plain_completion_error_status(client, backend):
    backend.completion_client.stream_chunks = [provider_failure(401)]

    response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]}, headers=ALICE)
    assert response.status_code == 502


def test_search_endpoint(client, backend):
    response = client.post("/api/search", json={"query": "latest Mars Rover news"})
    body = response.json()
    assert body["searchPerformed"] is True
    assert [r["url"] for r in body["results"]] == [r.url for r in MARS_RESULTS]


def test_search_rejects_empty_query(client):
    assert client.post("/api/search", json={"query": "  "}).status_code == 400


def test_search_provider_status_is_forwarded(client, backend):
    backend.web_search.error = WebSearchError("Search provider returned 429", status_code=429)
    assert client.post("/api/search", json={"query": "latest news"}).status_code == 429


def test_knowledge_base_endpoints(client):
    response = client.post(
        "/api/knowledge-base",
        files={"file": ("rover-notes.txt", b"The rover drilled a new sample.", "text/plain")},
        headers=ALICE,
    )
    assert response.status_code == 200
    document_id = response.json()["documentId"]
    assert response.json()["document"]["status"] == "ready"

    listing = client.get("/api/knowledge-base", headers=ALICE).json()["documents"]
    assert [d["id"] for d in listing] == [document_id]
    assert client.get("/api/knowledge-base", headers=MALLORY).json()["documents"] == []

    document = client.get(f"/api/knowledge-base/{document_id}", headers=ALICE).json()
    assert document["processingMetadata"]["progress"] == 100

    response = client.delete("/api/knowledge-base", params={"document_id": document_id}, headers=ALICE)
    assert response.status_code == 200
    assert client.get(f"/api/knowledge-base/{document_id}", headers=ALICE).status_code == 404


def test_unsupported_upload_is_rejected(client):
    response = client.post(
        "/api/knowledge-base", files={"file": ("photo.png", b"\x89PNG", "image/png")}, headers=ALICE,
    )
    assert response.status_code == 400
