"""
Process-wide collaborators, created lazily and cached.

Routes receive these through FastAPI Depends(); tests replace them with
app.dependency_overrides.
"""
import logging
from functools import lru_cache

from fastapi import Depends

from .chats import ChatRepository
from .config import settings
from .models.completion_client import CompletionClient
from .models.model_factory import get_main_client, get_summary_client
from .store.base import DocumentStore
from .store.blob_storage import BlobStorage, InMemoryBlobStorage, LocalBlobStorage
from .store.memory_store import InMemoryDocumentStore
from .store.weaviate_store import WeaviateDocumentStore
from .tools.web_search import WebSearchClient
from .utils.codec import ContentCodec, PlainTextCodec

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_store() -> DocumentStore:
    backend = settings.STORE_BACKEND.lower()
    if backend == "weaviate":
        logger.info("Using Weaviate document store")
        return WeaviateDocumentStore.from_settings()
    if backend != "memory":
        logger.warning(f"Unknown STORE_BACKEND '{settings.STORE_BACKEND}', using the in-memory store")
    return InMemoryDocumentStore()


@lru_cache(maxsize=1)
def get_blob_storage() -> BlobStorage:
    if settings.BLOB_STORAGE_DIR:
        return LocalBlobStorage(settings.BLOB_STORAGE_DIR)
    return InMemoryBlobStorage()


@lru_cache(maxsize=1)
def get_codec() -> ContentCodec:
    return PlainTextCodec()


def get_completion_client() -> CompletionClient:
    return get_main_client()


def get_memory_client() -> CompletionClient:
    return get_summary_client()


@lru_cache(maxsize=1)
def get_web_search_client() -> WebSearchClient:
    return WebSearchClient()


def get_chat_repository(
    store: DocumentStore = Depends(get_store), codec: ContentCodec = Depends(get_codec)
) -> ChatRepository:
    return ChatRepository(store, codec)
