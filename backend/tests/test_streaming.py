"""Tests for chat turns: NDJSON streaming, persistence and failure handling."""

import asyncio
from unittest.mock import AsyncMock, patch

import anyio
import pytest

from chat_engine import streaming
from chat_engine.chats import ChatRepository, messages_collection
from chat_engine.memory.context import ConversationMemoryManager
from chat_engine.store.memory_store import InMemoryDocumentStore
from chat_engine.streaming import APOLOGY_MESSAGE, ChatTurnService
from chat_engine.utils.codec import PlainTextCodec
from chat_engine.utils.serialization import NDJSONStreamDecoder
from tests.fakes.fake_llm import FakeCompletionClient, pipeline_script, provider_failure
from tests.fakes.fake_search import MARS_RESULTS, FakeWebSearch

WEB_ONLY = "KNOWLEDGE_BASE: NO\nWEB_SEARCH: YES\nAPPROACH: search the web"


def make_service(store, blob_storage, chats, client, web_search=None) -> ChatTurnService:
    return ChatTurnService(
        chats, store, blob_storage, PlainTextCodec(), client,
        memory_client=FakeCompletionClient(), web_search=web_search,
    )


async def collect(lines) -> list:
    decoder = NDJSONStreamDecoder()
    events = []
    async for line in lines:
        assert line.endswith("\n")
        events.extend(decoder.feed(line))
    events.extend(decoder.close())
    return events


async def drain_background_tasks():
    await asyncio.gather(*streaming._background_tasks)


async def stored_messages(store, chat_id):
    return await store.query(messages_collection(chat_id), order_by="timestamp")


@pytest.mark.asyncio
async def test_advanced_turn_streams_steps_then_final(store, blob_storage, chats):
    chat = await chats.create_chat("alice", title="Rovers", memory_strategy="simple")
    client = FakeCompletionClient(pipeline_script(plan=WEB_ONLY, answer="The rover is exploring Jezero."))
    service = make_service(store, blob_storage, chats, client, FakeWebSearch(MARS_RESULTS))

    events = await collect(service.stream_advanced_turn(chat, "alice", "What's the latest news on the Mars rover in 2025?"))
    await drain_background_tasks()

    assert [e["type"] for e in events] == ["thinking_step"] * 5 + ["final_response"]
    assert [e["step"]["stepType"] for e in events[:-1]] == [
        "analysis", "planning", "web_search", "synthesis", "reasoning",
    ]
    final = events[-1]
    assert final["response"] == "The rover is exploring Jezero."
    assert [s["id"] for s in final["thinkingSteps"]] == [e["step"]["id"] for e in events[:-1]]
    assert len(final["webSearchResults"]) == 2
    assert final["processingMetadata"]["langGraphState"] == "completed"
    assert final["processingMetadata"]["advancedMode"] is True
    assert final["processingMetadata"]["model"] == "fake-model"


@pytest.mark.asyncio
async def test_advanced_turn_persists_messages(store, blob_storage, chats):
    chat = await chats.create_chat("alice", memory_strategy="simple")
    service = make_service(store, blob_storage, chats, FakeCompletionClient(pipeline_script(answer="Hi Alice")))

    await collect(service.stream_advanced_turn(chat, "alice", "Hello"))
    await drain_background_tasks()

    user_message, assistant_message = await stored_messages(store, chat.id)
    assert user_message["role"] == "user"
    assert user_message["content"] == "Hello"
    assert assistant_message["role"] == "assistant"
    assert assistant_message["content"] == "Hi Alice"
    assert assistant_message["processing_metadata"]["lang_graph_state"] == "completed"
    assert len(assistant_message["thinking_steps"]) == 4


@pytest.mark.asyncio
async def test_collaborator_message_role(store, blob_storage, chats):
    chat = await chats.create_chat("alice", participants=["bob"], memory_strategy="simple")
    service = make_service(store, blob_storage, chats, FakeCompletionClient(pipeline_script()))

    await collect(service.stream_advanced_turn(chat, "bob", "Hello from Bob"))
    await drain_background_tasks()

    user_message = (await stored_messages(store, chat.id))[0]
    assert user_message["role"] == "collaborator"
    assert user_message["uid"] == "bob"


@pytest.mark.asyncio
async def test_history_reaches_the_next_turn(store, blob_storage, chats):
    chat = await chats.create_chat("alice", memory_strategy="simple")
    first = FakeCompletionClient(pipeline_script(answer="Nice to meet you, Ada."))
    await collect(make_service(store, blob_storage, chats, first).stream_advanced_turn(chat, "alice", "I'm Ada."))

    second = FakeCompletionClient(pipeline_script(answer="Your name is Ada."))
    await collect(make_service(store, blob_storage, chats, second).stream_advanced_turn(chat, "alice", "Who am I?"))
    await drain_background_tasks()

    response_prompt = second.prompt_text(3)
    assert "I'm Ada." in response_prompt
    assert "Nice to meet you, Ada." in response_prompt


@pytest.mark.asyncio
async def test_stage_failure_ends_stream_with_error(store, blob_storage, chats):
    """Steps already streamed stay; the last line is a structured error."""
    chat = await chats.create_chat("alice", memory_strategy="simple")
    client = FakeCompletionClient(["analysis", "KNOWLEDGE_BASE: NO\nWEB_SEARCH: NO", provider_failure(500)])
    service = make_service(store, blob_storage, chats, client)

    events = await collect(service.stream_advanced_turn(chat, "alice", "Explain entropy"))

    assert [e["type"] for e in events] == ["thinking_step", "thinking_step", "error"]
    error = events[-1]
    assert error["response"] == APOLOGY_MESSAGE
    assert "500" in error["error"]
    assert error["thinkingSteps"] == []
    assert error["processingMetadata"]["langGraphState"] == "failed"

    assistant_message = (await stored_messages(store, chat.id))[-1]
    assert assistant_message["content"] == APOLOGY_MESSAGE
    assert assistant_message["processing_metadata"]["lang_graph_state"] == "failed"
    assert len(assistant_message["thinking_steps"]) == 2


@pytest.mark.asyncio
async def test_closing_the_stream_marks_the_turn_cancelled(store, blob_storage, chats):
    chat = await chats.create_chat("alice", memory_strategy="simple")
    service = make_service(store, blob_storage, chats, FakeCompletionClient(pipeline_script()))

    lines = service.stream_advanced_turn(chat, "alice", "Hello")
    first_line = await lines.__anext__()
    await lines.aclose()

    assert '"thinking_step"' in first_line
    assistant_message = (await stored_messages(store, chat.id))[-1]
    assert assistant_message["processing_metadata"]["lang_graph_state"] == "cancelled"


@pytest.mark.asyncio
async def test_simple_turn_returns_final_response(store, blob_storage, chats):
    chat = await chats.create_chat("alice", memory_strategy="simple")
    client = FakeCompletionClient(["Plain answer"])
    service = make_service(store, blob_storage, chats, client)

    result = await service.simple_turn(chat, "alice", "Hello", model="other/model")
    await drain_background_tasks()

    assert result.response == "Plain answer"
    assert result.thinking_steps == []
    assert result.processing_metadata.advanced_mode is False
    assert client.option_overrides == [{"model": "other/model"}]
    assert len(client.calls) == 1
    assert [m["content"] for m in await stored_messages(store, chat.id)] == ["Hello", "Plain answer"]


@pytest.mark.asyncio
async def test_stream_completion_relays_chunks(store, blob_storage, chats):
    client = FakeCompletionClient(stream_chunks=["Hel", "lo"])
    service = make_service(store, blob_storage, chats, client)

    chunks = [chunk async for chunk in service.stream_completion([], None)]
    assert chunks == ["Hel", "lo"]


@pytest.mark.asyncio
async def test_memory_optimization_failure_does_not_fail_the_turn(store, blob_storage, chats):
    """Consolidation runs after the answer; its errors are logged, not raised."""
    chat = await chats.create_chat("alice", memory_strategy="summary")
    service = make_service(store, blob_storage, chats, FakeCompletionClient(pipeline_script(answer="Done")))

    with patch.object(ConversationMemoryManager, "optimize_memory", AsyncMock(side_effect=RuntimeError("boom"))) as optimize:
        events = await collect(service.stream_advanced_turn(chat, "alice", "Hello"))
        await drain_background_tasks()

    assert events[-1]["type"] == "final_response"
    optimize.assert_awaited_once()


class SlowWriteStore(InMemoryDocumentStore):
    """Updates yield to the event loop, as a networked store would."""

    async def update(self, collection, record_id, fields):
        await asyncio.sleep(0.01)
        await super().update(collection, record_id, fields)


class StalledCompletionClient(FakeCompletionClient):
    """Answers the first call, then never returns."""

    async def complete(self, messages, options=None):
        if self.calls:
            self.calls.append(list(messages))
            await asyncio.Event().wait()
        return await super().complete(messages, options)


@pytest.mark.asyncio
async def test_cancelled_response_task_still_marks_the_turn_cancelled(blob_storage):
    """The server cancels the whole response scope; the cleanup write must still land."""
    store = SlowWriteStore()
    chats = ChatRepository(store)
    chat = await chats.create_chat("alice", memory_strategy="simple")
    service = make_service(store, blob_storage, chats, StalledCompletionClient(pipeline_script()))
    first_line = asyncio.Event()

    async def consume():
        async for _ in service.stream_advanced_turn(chat, "alice", "Hello"):
            first_line.set()

    async with anyio.create_task_group() as task_group:
        task_group.start_soon(consume)
        await first_line.wait()
        task_group.cancel_scope.cancel()

    assistant_message = (await stored_messages(store, chat.id))[-1]
    assert assistant_message["processing_metadata"]["lang_graph_state"] == "cancelled"
