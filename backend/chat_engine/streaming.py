"""
One chat turn, end to end: memory context in, pipeline run, steps streamed
and persisted as they complete, final answer out, memory maintained.

Advanced turns stream NDJSON lines:
    {"type": "thinking_step", "step": {...}}        one per completed stage
    {"type": "final_response", ...}                 always last on success
    {"type": "error", ...}                          always last on failure
"""
import asyncio
import logging
import time
from typing import AsyncIterator, List, Optional, Set

import anyio
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from .agent import ThinkingPipeline
from .chats import CHATS_COLLECTION, ChatRepository
from .knowledge.base import KnowledgeBaseManager
from .memory.context import ConversationMemoryManager
from .memory.strategies import VectorMemoryRetriever
from .models.completion_client import CompletionClient
from .schemas import (
    ChatRecord,
    ErrorResponseEvent,
    FinalResponseEvent,
    PipelineResult,
    ProcessingMetadata,
    ThinkingStep,
    ThinkingStepEvent,
    to_record,
    utc_now,
)
from .store.base import DocumentStore
from .store.blob_storage import BlobStorage
from .tools.web_search import WebSearchClient
from .utils.codec import ContentCodec
from .utils.serialization import encode_ndjson_line

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"
APOLOGY_MESSAGE = "I apologize, but I encountered an error processing your request. Please try again."

_PIPELINE_DONE = object()

# Background memory maintenance tasks; referenced here so they are not collected mid-run
_background_tasks: Set[asyncio.Task] = set()


def elapsed_ms(started_at: float) -> int:
    return int((time.monotonic() - started_at) * 1000)


class ChatTurnService:

    def __init__(
        self,
        chats: ChatRepository,
        store: DocumentStore,
        blob_storage: BlobStorage,
        codec: ContentCodec,
        completion_client: CompletionClient,
        memory_client: Optional[CompletionClient] = None,
        web_search: Optional[WebSearchClient] = None,
        vector_retriever: Optional[VectorMemoryRetriever] = None,
    ):
        self.chats = chats
        self.store = store
        self.blob_storage = blob_storage
        self.codec = codec
        self.completion_client = completion_client
        self.memory_client = memory_client
        self.web_search = web_search
        self.vector_retriever = vector_retriever

    def memory_for(self, chat: ChatRecord, user_id: str) -> ConversationMemoryManager:
        return ConversationMemoryManager(
            chat_id=chat.id,
            user_id=user_id,
            store=self.store,
            completion_client=self.memory_client,
            memory_strategy=chat.memory_strategy,
            max_tokens=chat.max_memory_tokens,
            codec=self.codec,
            vector_retriever=self.vector_retriever,
        )

    def knowledge_base_for(self, user_id: str) -> KnowledgeBaseManager:
        return KnowledgeBaseManager(user_id, self.store, self.blob_storage, self.codec)

    def _client_for(self, model: Optional[str]) -> CompletionClient:
        return self.completion_client.with_options(model=model) if model else self.completion_client

    # --- Advanced (streamed) turn --- #

    async def stream_advanced_turn(
        self,
        chat: ChatRecord,
        user_id: str,
        message: str,
        model: Optional[str] = None,
        knowledge_base_enabled: bool = True,
        web_search_enabled: bool = True,
    ) -> AsyncIterator[str]:
        """
        Yields NDJSON lines for one advanced turn. The caller has already
        checked that user_id participates in the chat.
        """
        started_at = time.monotonic()
        client = self._client_for(model)
        memory = self.memory_for(chat, user_id)
        assistant_message_id: Optional[str] = None
        pipeline_task: Optional[asyncio.Task] = None

        try:
            history = await memory.get_conversation_context(query=message)
            await self._record_user_message(chat, user_id, message, memory)

            assistant_message = await self.chats.save_message(
                chat.id, "assistant", "", "assistant",
                processing_metadata=ProcessingMetadata(model=client.model, lang_graph_state="processing"),
            )
            assistant_message_id = assistant_message.id

            queue: asyncio.Queue = asyncio.Queue()
            persisted_steps: List[ThinkingStep] = []

            async def on_step(step: ThinkingStep) -> None:
                persisted_steps.append(step)
                await self.chats.update_message(
                    chat.id, assistant_message_id,
                    {"thinking_steps": [to_record(s) for s in persisted_steps]},
                )
                await queue.put(ThinkingStepEvent(step=step))

            pipeline = ThinkingPipeline(client, self.knowledge_base_for(user_id), self.web_search)
            pipeline_task = asyncio.create_task(pipeline.execute_thinking(
                message, user_id, chat.id, history, on_step,
                knowledge_base_enabled=knowledge_base_enabled,
                web_search_enabled=web_search_enabled,
            ))
            pipeline_task.add_done_callback(lambda _: queue.put_nowait(_PIPELINE_DONE))

            while True:
                item = await queue.get()
                if item is _PIPELINE_DONE:
                    break
                yield encode_ndjson_line(item)

            result: PipelineResult = pipeline_task.result()
            metadata = ProcessingMetadata(
                model=client.model,
                processing_time=elapsed_ms(started_at),
                advanced_mode=True,
                lang_graph_state="completed",
            )
            await self.chats.update_message(chat.id, assistant_message_id, {
                "content": result.response,
                "thinking_steps": [to_record(s) for s in result.thinking_steps],
                "knowledge_base_references": [to_record(r) for r in result.knowledge_base_references],
                "web_search_results": [to_record(r) for r in result.web_search_results],
                "processing_metadata": to_record(metadata),
            })
            await self._finish_turn(chat, memory, assistant_message_id, result.response)

            yield encode_ndjson_line(FinalResponseEvent(
                response=result.response,
                thinking_steps=result.thinking_steps,
                knowledge_base_references=result.knowledge_base_references,
                web_search_results=result.web_search_results,
                processing_metadata=metadata,
            ))

        except (asyncio.CancelledError, GeneratorExit):
            logger.info(f"Chat {chat.id}: stream closed by the client, cancelling the turn")
            if pipeline_task is not None and not pipeline_task.done():
                pipeline_task.cancel()
            if assistant_message_id:
                # The response task stays cancelled; shield the write so it completes
                with anyio.CancelScope(shield=True):
                    await self.chats.update_message(chat.id, assistant_message_id, {
                        "processing_metadata.lang_graph_state": "cancelled",
                        "processing_metadata.processing_time": elapsed_ms(started_at),
                    })
            raise

        except Exception as e:
            logger.exception(f"Chat {chat.id}: advanced turn failed")
            metadata = ProcessingMetadata(
                model=client.model,
                processing_time=elapsed_ms(started_at),
                advanced_mode=True,
                lang_graph_state="failed",
                error=str(e),
            )
            if assistant_message_id:
                await self.chats.update_message(chat.id, assistant_message_id, {
                    "content": APOLOGY_MESSAGE,
                    "processing_metadata": to_record(metadata),
                })
            yield encode_ndjson_line(ErrorResponseEvent(
                error=str(e), response=APOLOGY_MESSAGE, processing_metadata=metadata,
            ))

    # --- Simple (single call) turn --- #

    async def simple_turn(
        self,
        chat: ChatRecord,
        user_id: str,
        message: str,
        model: Optional[str] = None,
        web_search_enabled: bool = False,
    ) -> FinalResponseEvent:
        """One completion over the conversation context, no pipeline stages."""
        started_at = time.monotonic()
        client = self._client_for(model)
        memory = self.memory_for(chat, user_id)

        history = await memory.get_conversation_context(query=message)
        await self._record_user_message(chat, user_id, message, memory)

        response = await client.complete(history + [HumanMessage(content=message)])
        response = response or "No response generated"

        web_results = []
        if web_search_enabled and self.web_search is not None:
            try:
                web_results = (await self.web_search.search(message)).results
            except Exception:
                logger.exception(f"Chat {chat.id}: web search failed")

        metadata = ProcessingMetadata(
            model=client.model,
            processing_time=elapsed_ms(started_at),
            advanced_mode=False,
            lang_graph_state="completed",
        )
        assistant_message = await self.chats.save_message(
            chat.id, "assistant", response, "assistant",
            web_search_results=web_results,
            processing_metadata=metadata,
        )
        await self._finish_turn(chat, memory, assistant_message.id, response)

        return FinalResponseEvent(response=response, web_search_results=web_results, processing_metadata=metadata)

    async def stream_completion(self, messages: List[BaseMessage], model: Optional[str] = None) -> AsyncIterator[str]:
        """Plain streamed completion: yields text deltas as they arrive."""
        async for content in self._client_for(model).stream(messages):
            yield content

    # --- Shared --- #

    async def _record_user_message(
        self, chat: ChatRecord, user_id: str, message: str, memory: ConversationMemoryManager
    ) -> None:
        role = "user" if user_id == chat.created_by else "collaborator"
        stored = await self.chats.save_message(chat.id, role, message, user_id)
        await memory.add_message(stored.id, HumanMessage(content=message))

    async def _finish_turn(
        self, chat: ChatRecord, memory: ConversationMemoryManager, assistant_message_id: str, response: str
    ) -> None:
        await memory.add_message(assistant_message_id, AIMessage(content=response))
        await self.store.update(CHATS_COLLECTION, chat.id, {"updated_at": utc_now()})

        task = asyncio.create_task(self._optimize_memory(memory))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    @staticmethod
    async def _optimize_memory(memory: ConversationMemoryManager) -> None:
        try:
            await memory.optimize_memory()
        except Exception:
            # The turn has already been answered; the next turn retries consolidation
            logger.exception(f"Chat {memory.chat_id}: memory optimization failed")
