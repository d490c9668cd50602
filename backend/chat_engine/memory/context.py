"""
Conversation memory: keeps the context handed to the pipeline bounded.

Messages live under chats/<chat_id>/messages (written by the chat layer);
summary records live under chats/<chat_id>/memory and are owned by this
manager. Summaries never overlap: each one covers the messages after the
range of the one before it, and consolidation keeps the union range.
"""
import logging
import math
from typing import List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from .compression import estimate_message_tokens, estimate_tokens, TOKEN_CHAR_RATIO
from .strategies import (
    SimpleBufferStrategy,
    SummaryBufferStrategy,
    VectorMemoryRetriever,
    VectorStrategy,
)
from ..config import settings
from ..models.completion_client import CompletionClient
from ..schemas import (
    MemoryRecord,
    MemoryStats,
    MemoryStrategyName,
    MessageRange,
    SummaryMetadata,
    to_record,
    utc_now,
)
from ..store.base import DocumentStore, Record
from ..utils.codec import ContentCodec, PlainTextCodec

logger = logging.getLogger(__name__)

MEMORY_STRATEGIES = ("simple", "summary", "vector")
HUMAN_ROLES = ("user", "collaborator")
CONSOLIDATED_COMPRESSION_RATIO = 0.1


class ConversationMemoryManager:

    def __init__(
        self,
        chat_id: str,
        user_id: str,
        store: DocumentStore,
        completion_client: Optional[CompletionClient] = None,
        memory_strategy: MemoryStrategyName = settings.MEMORY_STRATEGY,
        max_tokens: int = settings.MAX_MEMORY_TOKENS,
        codec: Optional[ContentCodec] = None,
        vector_retriever: Optional[VectorMemoryRetriever] = None,
        message_limit: int = settings.SIMPLE_BUFFER_MESSAGE_LIMIT,
        consolidation_threshold: int = settings.SUMMARY_CONSOLIDATION_THRESHOLD,
        keep_recent_summaries: int = settings.SUMMARY_KEEP_RECENT,
    ):
        if memory_strategy not in MEMORY_STRATEGIES:
            raise ValueError(f"Unknown memory strategy: {memory_strategy}")
        self.chat_id = chat_id
        self.user_id = user_id
        self.store = store
        self._completion_client = completion_client
        self.memory_strategy = memory_strategy
        self.max_tokens = max_tokens
        self.codec = codec or PlainTextCodec()
        self.vector_retriever = vector_retriever
        self.message_limit = message_limit
        self.consolidation_threshold = consolidation_threshold
        self.keep_recent_summaries = keep_recent_summaries

    @property
    def messages_collection(self) -> str:
        return f"chats/{self.chat_id}/messages"

    @property
    def memory_collection(self) -> str:
        return f"chats/{self.chat_id}/memory"

    @property
    def completion_client(self) -> CompletionClient:
        # Created on first use so the simple strategy never needs provider credentials
        if self._completion_client is None:
            from ..models.model_factory import get_summary_client
            self._completion_client = get_summary_client()
        return self._completion_client

    # --- Context --- #

    async def get_conversation_context(
        self, message_limit: Optional[int] = None, query: Optional[str] = None
    ) -> List[BaseMessage]:
        """Prior turns for the next pipeline run, bounded by the active strategy."""
        strategy = self._strategy()
        context = await strategy.build_context(self, message_limit, query)
        logger.debug(f"Chat {self.chat_id}: {strategy.name} context with {len(context)} messages")
        return context

    def _strategy(self):
        summary = SummaryBufferStrategy(self.max_tokens)
        if self.memory_strategy == "simple":
            return SimpleBufferStrategy(self.message_limit)
        if self.memory_strategy == "vector":
            return VectorStrategy(self.vector_retriever, summary)
        return summary

    @property
    def summarizes(self) -> bool:
        """True when the summary strategy is in effect (including vector without a retriever)."""
        return self.memory_strategy == "summary" or (
            self.memory_strategy == "vector" and self.vector_retriever is None
        )

    async def fetch_messages(self, descending: bool = False, limit: Optional[int] = None) -> List[Record]:
        return await self.store.query(
            self.messages_collection, order_by="timestamp", descending=descending, limit=limit
        )

    def to_langchain_messages(self, records: List[Record]) -> List[BaseMessage]:
        """Decodes message records; user/collaborator become human turns, assistant AI turns, other roles are dropped."""
        messages: List[BaseMessage] = []
        for record in records:
            role = record.get("role")
            if role in HUMAN_ROLES:
                messages.append(HumanMessage(content=self.codec.decode(record["content"])))
            elif role == "assistant":
                messages.append(AIMessage(content=self.codec.decode(record["content"])))
        return messages

    async def get_summaries(self, descending: bool = False) -> List[MemoryRecord]:
        records = await self.store.query(
            self.memory_collection, filters={"type": "summary"}, order_by="created_at", descending=descending
        )
        return [MemoryRecord.model_validate(record) for record in records]

    async def get_latest_summary(self) -> Optional[MemoryRecord]:
        records = await self.store.query(
            self.memory_collection, filters={"type": "summary"}, order_by="created_at", descending=True, limit=1
        )
        return MemoryRecord.model_validate(records[0]) if records else None

    async def get_unsummarized_messages(self, summary: Optional[MemoryRecord]) -> List[Record]:
        """Messages strictly after the summary's last covered message, chronological."""
        records = await self.fetch_messages()
        end_id = summary.message_range.end_message_id if summary else ""
        if not end_id:
            return records
        for index, record in enumerate(records):
            if record["id"] == end_id:
                return records[index + 1:]
        logger.warning(f"Chat {self.chat_id}: summarized message {end_id} not found, using full history")
        return records

    # --- Summaries --- #

    async def create_conversation_summary(self, message_records: List[Record]) -> Optional[MemoryRecord]:
        """Summarizes the given messages and stores the summary covering their range."""
        messages = self.to_langchain_messages(message_records)
        if not messages:
            return None

        conversation_text = "\n".join(f"{msg.type}: {msg.content}" for msg in messages)
        summary_prompt = f"""
    Summarize the following conversation, preserving key information, decisions, and context that might be relevant for future messages:

    {conversation_text}

    Create a concise but comprehensive summary that maintains important details.
    """
        summary = await self.completion_client.complete([HumanMessage(content=summary_prompt)])

        original_tokens = estimate_message_tokens(messages)
        summary_tokens = estimate_tokens(summary)
        now = utc_now()
        record = MemoryRecord(
            id=self.store.new_id(),
            chat_id=self.chat_id,
            type="summary",
            content=summary,
            token_count=summary_tokens,
            created_at=now,
            updated_at=now,
            message_range=MessageRange(
                start_message_id=message_records[0]["id"],
                end_message_id=message_records[-1]["id"],
                message_count=len(messages),
            ),
            summary_metadata=SummaryMetadata(
                compression_ratio=summary_tokens / original_tokens if original_tokens else 0.0,
                original_token_count=original_tokens,
                summary_model=self.completion_client.model,
            ),
        )
        await self.store.set(self.memory_collection, record.id, to_record(record))
        logger.info(
            f"Chat {self.chat_id}: summarized {len(messages)} messages "
            f"({original_tokens} -> {summary_tokens} tokens)"
        )
        return record

    async def optimize_memory(self) -> Optional[MemoryRecord]:
        """
        Consolidates all but the most recent summaries into one once there are
        more than `consolidation_threshold` of them. Returns the new record, if any.
        """
        if not self.summarizes:
            return None

        summaries = await self.get_summaries()
        if len(summaries) <= self.consolidation_threshold:
            return None

        old_summaries = summaries[:len(summaries) - self.keep_recent_summaries]
        if len(old_summaries) < 2:
            return None
        summary_texts = [summary.content for summary in old_summaries]
        joined = "\n\n---\n\n".join(summary_texts)
        meta_summary_prompt = f"""
      Create a consolidated summary from these conversation summaries:

      {joined}

      Preserve the most important information while reducing redundancy.
      """
        content = await self.completion_client.complete([HumanMessage(content=meta_summary_prompt)])

        newest_old = old_summaries[-1]
        consolidated = MemoryRecord(
            id=self.store.new_id(),
            chat_id=self.chat_id,
            type="summary",
            content=content,
            token_count=estimate_tokens(content),
            created_at=newest_old.created_at, # Keeps its place before the summaries it did not replace
            updated_at=utc_now(),
            message_range=MessageRange(
                start_message_id=old_summaries[0].message_range.start_message_id,
                end_message_id=newest_old.message_range.end_message_id,
                message_count=sum(s.message_range.message_count for s in old_summaries),
            ),
            summary_metadata=SummaryMetadata(
                compression_ratio=CONSOLIDATED_COMPRESSION_RATIO,
                original_token_count=sum(math.ceil(len(text) / TOKEN_CHAR_RATIO) for text in summary_texts),
                summary_model=self.completion_client.model,
            ),
        )

        batch = self.store.batch()
        for summary in old_summaries:
            batch.delete(self.memory_collection, summary.id)
        batch.set(self.memory_collection, consolidated.id, to_record(consolidated))
        await batch.commit()

        logger.info(f"Chat {self.chat_id}: consolidated {len(old_summaries)} summaries")
        return consolidated

    # --- Maintenance --- #

    async def add_message(self, message_id: str, message: BaseMessage) -> None:
        """Hook for a newly stored message; indexes it when a vector retriever is configured."""
        if self.memory_strategy == "vector" and self.vector_retriever is not None:
            await self.vector_retriever.index_message(self.chat_id, message_id, message)

    async def clear_memory(self) -> None:
        records = await self.store.query(self.memory_collection)
        batch = self.store.batch()
        for record in records:
            batch.delete(self.memory_collection, record["id"])
        await batch.commit()
        logger.info(f"Chat {self.chat_id}: cleared {len(records)} memory records")

    async def get_memory_stats(self) -> MemoryStats:
        records = await self.store.query(self.memory_collection)
        summary_dates = [r["created_at"] for r in records if r.get("type") == "summary"]
        return MemoryStats(
            total_memory_records=len(records),
            total_tokens=sum(r.get("token_count", 0) for r in records),
            memory_strategy=self.memory_strategy,
            last_summary_date=max(summary_dates) if summary_dates else None,
        )

    def update_memory_strategy(self, new_strategy: MemoryStrategyName) -> None:
        if new_strategy not in MEMORY_STRATEGIES:
            raise ValueError(f"Unknown memory strategy: {new_strategy}")
        self.memory_strategy = new_strategy
