"""
Chat and message records.

Chats live in the "chats" collection; messages under chats/<chat_id>/messages
with their content encoded by the configured ContentCodec.
"""
import logging
from typing import Any, Dict, List, Optional

from .config import settings
from .errors import ChatNotFoundError, ConversationAccessError
from .schemas import ChatRecord, ChatSettings, MessageRecord, MemoryStrategyName, to_record, utc_now
from .store.base import DocumentStore
from .utils.codec import ContentCodec, PlainTextCodec

logger = logging.getLogger(__name__)

CHATS_COLLECTION = "chats"

# Chat fields a participant may change through the API
CONFIG_FIELDS = (
    "title",
    "advanced_thinking_enabled",
    "knowledge_base_enabled",
    "memory_strategy",
    "max_memory_tokens",
)


def messages_collection(chat_id: str) -> str:
    return f"{CHATS_COLLECTION}/{chat_id}/messages"


class ChatRepository:

    def __init__(self, store: DocumentStore, codec: Optional[ContentCodec] = None):
        self.store = store
        self.codec = codec or PlainTextCodec()

    async def create_chat(
        self,
        created_by: str,
        title: str = "",
        participants: Optional[List[str]] = None,
        memory_strategy: MemoryStrategyName = settings.MEMORY_STRATEGY,
        max_memory_tokens: int = settings.MAX_MEMORY_TOKENS,
        advanced_thinking_enabled: bool = False,
        knowledge_base_enabled: bool = False,
        chat_settings: Optional[ChatSettings] = None,
    ) -> ChatRecord:
        members = [created_by] + [p for p in (participants or []) if p != created_by]
        chat = ChatRecord(
            id=self.store.new_id(),
            created_by=created_by,
            participants=members,
            title=title,
            memory_strategy=memory_strategy,
            max_memory_tokens=max_memory_tokens,
            advanced_thinking_enabled=advanced_thinking_enabled,
            knowledge_base_enabled=knowledge_base_enabled,
            settings=chat_settings or ChatSettings(),
        )
        await self.store.set(CHATS_COLLECTION, chat.id, to_record(chat))
        logger.info(f"Created chat {chat.id} for {created_by}")
        return chat

    async def get_chat(self, chat_id: str) -> ChatRecord:
        record = await self.store.get(CHATS_COLLECTION, chat_id)
        if record is None:
            raise ChatNotFoundError(f"Chat not found: {chat_id}")
        return ChatRecord.model_validate(record)

    async def get_chat_for_participant(self, chat_id: str, user_id: str) -> ChatRecord:
        """The chat, provided user_id is one of its participants."""
        chat = await self.get_chat(chat_id)
        if user_id not in chat.participants:
            logger.warning(f"User {user_id} denied access to chat {chat_id}")
            raise ConversationAccessError("Unauthorized access to chat")
        return chat

    async def update_chat_config(
        self, chat_id: str, user_id: str, updates: Dict[str, Any], chat_settings: Optional[Dict[str, Any]] = None
    ) -> ChatRecord:
        """Applies config changes (None values are ignored) and returns the updated chat."""
        chat = await self.get_chat_for_participant(chat_id, user_id)
        fields = {key: value for key, value in updates.items() if key in CONFIG_FIELDS and value is not None}
        if chat_settings:
            merged = chat.settings.model_copy(update={k: v for k, v in chat_settings.items() if v is not None})
            fields["settings"] = to_record(merged)
        # Validate the merged result before writing it
        updated = ChatRecord.model_validate({**to_record(chat), **fields, "updated_at": utc_now()})
        await self.store.set(CHATS_COLLECTION, chat_id, to_record(updated))
        return updated

    # --- Messages --- #

    async def save_message(self, chat_id: str, role: str, content: str, uid: str, **fields: Any) -> MessageRecord:
        message = MessageRecord(
            id=self.store.new_id(),
            role=role,
            content=self.codec.encode(content),
            timestamp=utc_now(),
            uid=uid,
            **fields,
        )
        await self.store.set(messages_collection(chat_id), message.id, to_record(message))
        return message

    async def update_message(self, chat_id: str, message_id: str, fields: Dict[str, Any]) -> None:
        if "content" in fields:
            fields = {**fields, "content": self.codec.encode(fields["content"])}
        await self.store.update(messages_collection(chat_id), message_id, fields)

    async def get_message(self, chat_id: str, message_id: str) -> Optional[MessageRecord]:
        """The stored message with its content decoded, or None."""
        record = await self.store.get(messages_collection(chat_id), message_id)
        if record is None:
            return None
        message = MessageRecord.model_validate(record)
        return message.model_copy(update={"content": self.codec.decode(message.content)})
