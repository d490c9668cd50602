"""
Context-building strategies behind ConversationMemoryManager.get_conversation_context().

- simple: the latest N messages, nothing else.
- summary: the latest summary as a synthetic AI turn, then every message after
  the range it covers; over budget, the unsummarized tail is summarized first.
- vector: delegated to a VectorMemoryRetriever, summary when none is configured.
"""
import logging
from typing import TYPE_CHECKING, List, Optional, Protocol

from langchain_core.messages import AIMessage, BaseMessage

from .compression import estimate_message_tokens

if TYPE_CHECKING:
    from .context import ConversationMemoryManager

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "Previous conversation summary: "

# Each pass summarizes the whole tail, so a second pass only happens when
# messages arrive while the first summary is being generated
MAX_SUMMARY_PASSES = 3


class VectorMemoryRetriever(Protocol):
    async def index_message(self, chat_id: str, message_id: str, message: BaseMessage) -> None:
        ...

    async def retrieve(self, chat_id: str, query: Optional[str], max_tokens: int) -> List[BaseMessage]:
        ...


class SimpleBufferStrategy:
    name = "simple"

    def __init__(self, message_limit: int = 20):
        self.message_limit = message_limit

    async def build_context(
        self, memory: "ConversationMemoryManager", message_limit: Optional[int] = None, query: Optional[str] = None
    ) -> List[BaseMessage]:
        records = await memory.fetch_messages(descending=True, limit=message_limit or self.message_limit)
        records.reverse() # Chronological order
        return memory.to_langchain_messages(records)


class SummaryBufferStrategy:
    name = "summary"

    def __init__(self, max_tokens: int = 4000):
        self.max_tokens = max_tokens

    async def build_context(
        self, memory: "ConversationMemoryManager", message_limit: Optional[int] = None, query: Optional[str] = None
    ) -> List[BaseMessage]:
        for attempt in range(MAX_SUMMARY_PASSES):
            summary = await memory.get_latest_summary()
            context: List[BaseMessage] = []
            if summary:
                context.append(AIMessage(content=f"{SUMMARY_PREFIX}{summary.content}"))

            tail_records = await memory.get_unsummarized_messages(summary)
            context.extend(memory.to_langchain_messages(tail_records))

            total_tokens = estimate_message_tokens(context)
            if total_tokens <= self.max_tokens or not tail_records:
                return context

            logger.info(
                f"Chat {memory.chat_id}: context ~{total_tokens} tokens exceeds {self.max_tokens}, "
                f"summarizing {len(tail_records)} messages"
            )
            await memory.create_conversation_summary(tail_records)

        logger.warning(f"Chat {memory.chat_id}: context still over budget after {MAX_SUMMARY_PASSES} summaries")
        return context


class VectorStrategy:
    name = "vector"

    def __init__(self, retriever: Optional[VectorMemoryRetriever], fallback: SummaryBufferStrategy):
        self.retriever = retriever
        self.fallback = fallback

    async def build_context(
        self, memory: "ConversationMemoryManager", message_limit: Optional[int] = None, query: Optional[str] = None
    ) -> List[BaseMessage]:
        if self.retriever is None:
            return await self.fallback.build_context(memory, message_limit, query)
        return await self.retriever.retrieve(memory.chat_id, query, self.fallback.max_tokens)
