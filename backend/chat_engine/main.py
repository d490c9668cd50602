import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel

from .agent import validate_step_order
from .chats import ChatRepository
from .config import settings
from .errors import (
    ChatNotFoundError,
    CompletionError,
    ConversationAccessError,
    DocumentDeletionError,
    DocumentNotFoundError,
    DocumentValidationError,
    WebSearchError,
)
from .knowledge.base import KnowledgeBaseManager
from .memory.context import ConversationMemoryManager
from .models.completion_client import CompletionClient
from .schemas import (
    CamelModel,
    ChatSettings,
    ErrorResponseEvent,
    MemoryStrategyName,
    ProcessingMetadata,
    to_wire,
)
from .services import (
    get_blob_storage,
    get_chat_repository,
    get_codec,
    get_completion_client,
    get_memory_client,
    get_store,
    get_web_search_client,
)
from .store.base import DocumentStore
from .store.blob_storage import BlobStorage
from .streaming import APOLOGY_MESSAGE, NDJSON_MEDIA_TYPE, ChatTurnService
from .tools.web_search import WebSearchClient
from .utils.codec import ContentCodec

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Thinking Chat API")

# --- CORS Configuration --- #
# Allow frontend origin (adjust in production)
origins = [
    settings.FRONTEND_URL,
    "http://localhost:3000", # Default if FRONTEND_URL not set
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"], # Allows all methods
    allow_headers=["*"], # Allows all headers
)

# --- Request Models --- #

class CreateChatRequest(CamelModel):
    title: str = ""
    participants: List[str] = []
    memory_strategy: MemoryStrategyName = settings.MEMORY_STRATEGY
    max_memory_tokens: int = settings.MAX_MEMORY_TOKENS
    advanced_thinking_enabled: bool = False
    knowledge_base_enabled: bool = False
    settings: Optional[ChatSettings] = None


class AdvancedChatRequest(CamelModel):
    chat_id: str
    message: str
    model: Optional[str] = None
    advanced_thinking: Optional[bool] = None # None uses the chat's own setting
    knowledge_base_enabled: bool = True
    web_search_enabled: bool = True


class ChatSettingsUpdate(CamelModel):
    web_search_enabled: Optional[bool] = None
    thinking_steps_visible: Optional[bool] = None
    knowledge_base_weight: Optional[float] = None


class ChatConfigUpdate(CamelModel):
    title: Optional[str] = None
    advanced_thinking_enabled: Optional[bool] = None
    knowledge_base_enabled: Optional[bool] = None
    memory_strategy: Optional[MemoryStrategyName] = None
    max_memory_tokens: Optional[int] = None
    settings: Optional[ChatSettingsUpdate] = None


class UpdateChatConfigRequest(CamelModel):
    chat_id: str
    config: ChatConfigUpdate


class ChatTurnMessage(BaseModel):
    role: str
    content: str


class CompletionRequest(CamelModel):
    messages: List[ChatTurnMessage]
    model: Optional[str] = None


class SearchRequest(BaseModel):
    query: str

# --- Dependencies --- #

def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, established upstream and passed in the X-User-Id header."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


def get_turn_service(
    chats: ChatRepository = Depends(get_chat_repository),
    store: DocumentStore = Depends(get_store),
    blob_storage: BlobStorage = Depends(get_blob_storage),
    codec: ContentCodec = Depends(get_codec),
    completion_client: CompletionClient = Depends(get_completion_client),
    memory_client: CompletionClient = Depends(get_memory_client),
    web_search: WebSearchClient = Depends(get_web_search_client),
) -> ChatTurnService:
    return ChatTurnService(chats, store, blob_storage, codec, completion_client, memory_client, web_search)


def get_knowledge_base(
    user_id: str = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
    blob_storage: BlobStorage = Depends(get_blob_storage),
    codec: ContentCodec = Depends(get_codec),
) -> KnowledgeBaseManager:
    return KnowledgeBaseManager(user_id, store, blob_storage, codec)


def to_http_error(e: Exception) -> HTTPException:
    """Maps engine exceptions onto HTTP responses."""
    if isinstance(e, (ChatNotFoundError, DocumentNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ConversationAccessError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, (DocumentValidationError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, CompletionError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, WebSearchError):
        return HTTPException(status_code=e.status_code or 500, detail=f"Failed to fetch search results: {e}")
    return HTTPException(status_code=500, detail=str(e) or "Internal server error")


def to_langchain_message(message: ChatTurnMessage) -> BaseMessage:
    if message.role == "assistant":
        return AIMessage(content=message.content)
    if message.role == "system":
        return SystemMessage(content=message.content)
    return HumanMessage(content=message.content)

# --- API Endpoints --- #

@app.get("/", tags=["Status"])
def read_root():
    return {"message": "Thinking Chat Backend is running"}


@app.post("/api/chats", tags=["Chat"])
async def create_chat(
    request: CreateChatRequest,
    user_id: str = Depends(get_current_user),
    chats: ChatRepository = Depends(get_chat_repository),
):
    chat = await chats.create_chat(
        created_by=user_id,
        title=request.title,
        participants=request.participants,
        memory_strategy=request.memory_strategy,
        max_memory_tokens=request.max_memory_tokens,
        advanced_thinking_enabled=request.advanced_thinking_enabled,
        knowledge_base_enabled=request.knowledge_base_enabled,
        chat_settings=request.settings,
    )
    return to_wire(chat)


@app.post("/api/chat/advanced", tags=["Chat"])
async def advanced_chat_endpoint(
    request: AdvancedChatRequest,
    user_id: str = Depends(get_current_user),
    chats: ChatRepository = Depends(get_chat_repository),
    service: ChatTurnService = Depends(get_turn_service),
):
    """
    Runs one chat turn. With advanced thinking the response is a stream of
    NDJSON lines (thinking steps, then the final response); otherwise one JSON object.
    """
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="Missing required fields: chatId, message")
    try:
        chat = await chats.get_chat_for_participant(request.chat_id, user_id)
    except (ChatNotFoundError, ConversationAccessError) as e:
        raise to_http_error(e)

    advanced = request.advanced_thinking if request.advanced_thinking is not None else chat.advanced_thinking_enabled
    if advanced:
        logger.info(f"Advanced turn for chat {chat.id}")
        return StreamingResponse(
            service.stream_advanced_turn(
                chat, user_id, request.message, request.model,
                knowledge_base_enabled=request.knowledge_base_enabled,
                web_search_enabled=request.web_search_enabled,
            ),
            media_type=NDJSON_MEDIA_TYPE, # Use newline-delimited JSON for streaming
        )

    try:
        result = await service.simple_turn(
            chat, user_id, request.message, request.model,
            web_search_enabled=request.web_search_enabled and chat.settings.web_search_enabled,
        )
        return to_wire(result)
    except Exception as e:
        logger.exception(f"Chat {chat.id}: simple turn failed")
        failure = ErrorResponseEvent(
            error=str(e),
            response=APOLOGY_MESSAGE,
            processing_metadata=ProcessingMetadata(
                model="error", advanced_mode=False, lang_graph_state="failed", error=str(e)
            ),
        )
        return JSONResponse(status_code=500, content=to_wire(failure))


@app.get("/api/chat/advanced", tags=["Chat"])
async def get_chat_config(
    chat_id: str,
    user_id: str = Depends(get_current_user),
    chats: ChatRepository = Depends(get_chat_repository),
    store: DocumentStore = Depends(get_store),
):
    """Chat configuration plus memory statistics."""
    try:
        chat = await chats.get_chat_for_participant(chat_id, user_id)
    except (ChatNotFoundError, ConversationAccessError) as e:
        raise to_http_error(e)

    memory = ConversationMemoryManager(chat.id, user_id, store, memory_strategy=chat.memory_strategy)
    stats = await memory.get_memory_stats()
    return {"chatConfig": chat_config_wire(chat), "memoryStats": to_wire(stats)}


@app.put("/api/chat/advanced", tags=["Chat"])
async def update_chat_config(
    request: UpdateChatConfigRequest,
    user_id: str = Depends(get_current_user),
    chats: ChatRepository = Depends(get_chat_repository),
):
    config = request.config
    updates = config.model_dump(exclude={"settings"}, exclude_none=True)
    chat_settings = config.settings.model_dump(exclude_none=True) if config.settings else None
    try:
        chat = await chats.update_chat_config(request.chat_id, user_id, updates, chat_settings)
    except (ChatNotFoundError, ConversationAccessError, ValueError) as e:
        raise to_http_error(e)

    return {
        "success": True,
        "message": "Chat configuration updated successfully",
        "chatConfig": chat_config_wire(chat),
    }


def chat_config_wire(chat) -> Dict[str, Any]:
    return {
        "advancedThinkingEnabled": chat.advanced_thinking_enabled,
        "knowledgeBaseEnabled": chat.knowledge_base_enabled,
        "memoryStrategy": chat.memory_strategy,
        "maxMemoryTokens": chat.max_memory_tokens,
        "settings": to_wire(chat.settings),
    }


@app.get("/api/chats/{chat_id}/messages/{message_id}/trace", tags=["Chat"])
async def get_message_trace(
    chat_id: str,
    message_id: str,
    user_id: str = Depends(get_current_user),
    chats: ChatRepository = Depends(get_chat_repository),
):
    """Replays the persisted thinking steps of an assistant message."""
    try:
        await chats.get_chat_for_participant(chat_id, user_id)
    except (ChatNotFoundError, ConversationAccessError) as e:
        raise to_http_error(e)

    message = await chats.get_message(chat_id, message_id)
    if message is None:
        raise HTTPException(status_code=404, detail=f"Message not found: {message_id}")

    state = message.processing_metadata.lang_graph_state if message.processing_metadata else None
    return {
        "messageId": message.id,
        "langGraphState": state,
        "thinkingSteps": [to_wire(step) for step in message.thinking_steps],
        "validOrder": validate_step_order(message.thinking_steps, complete=state == "completed"),
    }


@app.post("/api/chat", tags=["Chat"])
async def completion_stream_endpoint(
    request: CompletionRequest,
    user_id: str = Depends(get_current_user),
    service: ChatTurnService = Depends(get_turn_service),
):
    """Plain streamed completion; the body is the answer text as it is generated."""
    if not request.messages:
        raise HTTPException(status_code=400, detail="At least one message is required")

    chunks = service.stream_completion([to_langchain_message(m) for m in request.messages], request.model)
    # Pull the first chunk here so provider errors still become an HTTP status
    try:
        first_chunk = await chunks.__anext__()
    except StopAsyncIteration:
        first_chunk = ""
    except CompletionError as e:
        logger.error(f"Completion stream failed to start: {e}")
        raise to_http_error(e)

    async def relay():
        if first_chunk:
            yield first_chunk
        async for chunk in chunks:
            yield chunk

    return StreamingResponse(relay(), media_type="text/plain; charset=utf-8")


@app.post("/api/search", tags=["Search"])
async def search_endpoint(
    request: SearchRequest,
    web_search: WebSearchClient = Depends(get_web_search_client),
):
    if not request.query or not request.query.strip():
        raise HTTPException(status_code=400, detail="Invalid search query")
    try:
        response = await web_search.search(request.query)
    except WebSearchError as e:
        logger.error(f"Search failed for '{request.query}': {e}")
        raise to_http_error(e)
    return to_wire(response)

# --- Knowledge Base API Endpoints --- #

@app.post("/api/knowledge-base", tags=["Knowledge Base"])
async def upload_document(
    file: UploadFile = File(...),
    knowledge_base: KnowledgeBaseManager = Depends(get_knowledge_base),
):
    data = await file.read()
    try:
        document_id = await knowledge_base.upload_document(
            file.filename or "upload", file.content_type or "application/octet-stream", data
        )
        document = await knowledge_base.get_document(document_id)
    except DocumentValidationError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.exception(f"Upload of {file.filename} failed")
        raise HTTPException(status_code=500, detail=f"Failed to process document: {e}")
    return {"documentId": document_id, "document": to_wire(document)}


@app.get("/api/knowledge-base", tags=["Knowledge Base"])
async def list_documents(knowledge_base: KnowledgeBaseManager = Depends(get_knowledge_base)):
    documents = await knowledge_base.get_user_documents()
    return {"documents": [to_wire(document) for document in documents]}


@app.get("/api/knowledge-base/{document_id}", tags=["Knowledge Base"])
async def get_document(document_id: str, knowledge_base: KnowledgeBaseManager = Depends(get_knowledge_base)):
    """Document record, including processing progress."""
    try:
        document = await knowledge_base.get_document(document_id)
    except DocumentNotFoundError as e:
        raise to_http_error(e)
    return to_wire(document)


@app.delete("/api/knowledge-base", tags=["Knowledge Base"])
async def delete_document(document_id: str, knowledge_base: KnowledgeBaseManager = Depends(get_knowledge_base)):
    try:
        await knowledge_base.delete_document(document_id)
    except (DocumentNotFoundError, DocumentDeletionError) as e:
        raise to_http_error(e)
    return {"success": True, "message": "Document deleted successfully"}

# --- Run with Uvicorn (for local development) --- #
# uvicorn chat_engine.main:app --reload --port 8000 (from the backend/ directory)
