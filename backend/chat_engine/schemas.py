import operator
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TypedDict, Annotated, List, Dict, Optional, Any, Literal

from langchain_core.messages import BaseMessage, HumanMessage
from langgraph.graph.message import add_messages
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string (the format stored on every record)."""
    return datetime.now(timezone.utc).isoformat()


class CamelModel(BaseModel):
    """Snake_case in Python and in the store, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Thinking Steps --- #

class StepKind(str, Enum):
    ANALYSIS = "analysis"
    PLANNING = "planning"
    KNOWLEDGE_QUERY = "knowledge_query"
    WEB_SEARCH = "web_search"
    SYNTHESIS = "synthesis"
    REASONING = "reasoning" # Response generation


class ThinkingStep(CamelModel):
    """Immutable audit record produced by a completed pipeline stage."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    step_type: StepKind
    title: str
    content: str
    timestamp: str
    duration: int # Milliseconds


def make_step(kind: StepKind, title: str, content: str, started_at: float) -> ThinkingStep:
    """
    Builds a step for a stage that started at `started_at` (a time.monotonic() reading).
    """
    return ThinkingStep(
        id=f"step-{uuid.uuid4().hex}",
        step_type=kind,
        title=title,
        content=content,
        timestamp=utc_now(),
        duration=int((time.monotonic() - started_at) * 1000),
    )


class KnowledgeBaseReference(CamelModel):
    document_id: str
    document_title: str
    relevance_score: float
    excerpt: str = ""
    chunk_id: Optional[str] = None


class WebSearchResult(CamelModel):
    url: str
    title: str = ""
    snippet: str = ""


class ProcessingMetadata(CamelModel):
    model: str
    processing_time: int = 0 # Milliseconds
    advanced_mode: bool = True
    lang_graph_state: str = "processing" # processing | completed | failed | cancelled
    error: Optional[str] = None


# --- Streaming Protocol Messages --- #

class ThinkingStepEvent(CamelModel):
    type: Literal["thinking_step"] = "thinking_step"
    step: ThinkingStep


class FinalResponseEvent(CamelModel):
    type: Literal["final_response"] = "final_response"
    response: str
    thinking_steps: List[ThinkingStep] = []
    knowledge_base_references: List[KnowledgeBaseReference] = []
    web_search_results: List[WebSearchResult] = []
    processing_metadata: ProcessingMetadata


class ErrorResponseEvent(CamelModel):
    """Structured failure: an apology plus empty step/reference arrays."""
    type: Literal["error"] = "error"
    error: str
    response: str
    thinking_steps: List[ThinkingStep] = []
    knowledge_base_references: List[KnowledgeBaseReference] = []
    web_search_results: List[WebSearchResult] = []
    processing_metadata: ProcessingMetadata


# --- Pipeline State --- #

class ConversationState(TypedDict):
    # Conversation
    conversation_history: List[BaseMessage] # Prior turns supplied by the memory manager
    messages: Annotated[List[BaseMessage], add_messages] # Running history, stage replies appended
    user_query: str
    user_id: str
    chat_id: str

    # Trace
    current_step: str
    thinking_steps: Annotated[List[ThinkingStep], operator.add]

    # Retrieval
    knowledge_base_references: List[KnowledgeBaseReference]
    web_search_results: List[WebSearchResult]
    needs_knowledge_base: bool
    needs_web_search: bool

    # Final Output
    final_response: str


def create_initial_state(
    query: str,
    user_id: str,
    chat_id: str,
    conversation_history: Optional[List[BaseMessage]] = None,
) -> ConversationState:
    """
    Creates the state for one pipeline run.

    Args:
        query: The user's message for this turn.
        user_id: The caller.
        chat_id: The conversation the turn belongs to.
        conversation_history: Prior turns (already bounded by the memory manager).

    Returns:
        A ConversationState dictionary with initial values.
    """
    history = list(conversation_history or [])
    return ConversationState(
        conversation_history=history,
        messages=history + [HumanMessage(content=query)],
        user_query=query,
        user_id=user_id,
        chat_id=chat_id,
        current_step="",
        thinking_steps=[],
        knowledge_base_references=[],
        web_search_results=[],
        needs_knowledge_base=False,
        needs_web_search=False,
        final_response="",
    )


class PipelineResult(CamelModel):
    response: str
    thinking_steps: List[ThinkingStep]
    knowledge_base_references: List[KnowledgeBaseReference]
    web_search_results: List[WebSearchResult]


# --- Conversation Records --- #

MemoryStrategyName = Literal["simple", "summary", "vector"]


class ChatSettings(CamelModel):
    web_search_enabled: bool = False
    thinking_steps_visible: bool = True
    knowledge_base_weight: float = 0.5


class ChatRecord(CamelModel):
    id: str
    created_by: str
    participants: List[str]
    title: str = ""
    memory_strategy: MemoryStrategyName = "summary"
    max_memory_tokens: int = 4000
    advanced_thinking_enabled: bool = False
    knowledge_base_enabled: bool = False
    settings: ChatSettings = Field(default_factory=ChatSettings)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class MessageRecord(CamelModel):
    id: str
    role: str # user | collaborator | assistant | system
    content: str # Encoded by the configured ContentCodec
    timestamp: str
    uid: str
    thinking_steps: List[ThinkingStep] = []
    knowledge_base_references: List[KnowledgeBaseReference] = []
    web_search_results: List[WebSearchResult] = []
    processing_metadata: Optional[ProcessingMetadata] = None


class MessageRange(CamelModel):
    start_message_id: str = ""
    end_message_id: str = ""
    message_count: int = 0


class SummaryMetadata(CamelModel):
    compression_ratio: float
    original_token_count: int
    summary_model: str


class MemoryRecord(CamelModel):
    id: str
    chat_id: str
    type: Literal["buffer", "summary"]
    content: str
    token_count: int
    created_at: str
    updated_at: str
    message_range: MessageRange = Field(default_factory=MessageRange)
    summary_metadata: Optional[SummaryMetadata] = None


class MemoryStats(CamelModel):
    total_memory_records: int
    total_tokens: int
    memory_strategy: MemoryStrategyName
    last_summary_date: Optional[str] = None


# --- Knowledge Base Records --- #

class DocumentStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"
    DELETING = "deleting"


class ProcessingStage(str, Enum):
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    STORING = "storing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"


class DocumentProcessingMetadata(CamelModel):
    total_chunks: int = 0
    total_tokens: int = 0
    progress: int = 0
    stage: Optional[ProcessingStage] = None
    last_updated: Optional[str] = None
    error_message: Optional[str] = None


class DocumentMetadata(CamelModel):
    title: str = ""
    keywords: List[str] = []


class IndexMetadata(CamelModel):
    index_id: str = ""
    vector_store_id: str = ""
    embedding_model: str = ""
    last_indexed: str = ""


class KnowledgeDocument(CamelModel):
    id: str
    user_id: str
    file_name: str
    original_file_name: str
    mime_type: str
    file_size: int
    uploaded_at: str
    processed_at: Optional[str] = None
    status: DocumentStatus = DocumentStatus.UPLOADING
    storage_path: str = ""
    processing_metadata: DocumentProcessingMetadata = Field(default_factory=DocumentProcessingMetadata)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    index_metadata: IndexMetadata = Field(default_factory=IndexMetadata)
    tags: List[str] = []
    is_active: bool = True


class EmbeddingMetadata(CamelModel):
    model: str
    dimensions: int
    created_at: str


class DocumentChunk(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    document_id: str
    chunk_index: int
    content: str # Encoded by the configured ContentCodec
    token_count: int
    start_position: int
    end_position: int
    page_number: Optional[int] = None
    embedding_metadata: EmbeddingMetadata
    previous_chunk_id: Optional[str] = None
    next_chunk_id: Optional[str] = None
    keywords: List[str] = []


def to_record(model: BaseModel) -> Dict[str, Any]:
    """Store representation of a model: plain JSON types, snake_case keys."""
    return model.model_dump(mode="json")


def to_wire(model: BaseModel) -> Dict[str, Any]:
    """Client representation of a model: plain JSON types, camelCase keys."""
    return model.model_dump(mode="json", by_alias=True)
