"""Pytest configuration and fixtures."""

import os

import pytest

# chat_engine.config reads the environment at import time, which happens during collection
os.environ.setdefault("OPENROUTER_API_KEY", "test-openrouter-key")
os.environ.setdefault("SERPER_API_KEY", "test-serper-key")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("BLOB_STORAGE_DIR", "")
os.environ.setdefault("RATE_LIMIT_RETRY_DELAY", "0")

from chat_engine import streaming  # noqa: E402
from chat_engine.chats import ChatRepository  # noqa: E402
from chat_engine.store.blob_storage import InMemoryBlobStorage  # noqa: E402
from chat_engine.store.memory_store import InMemoryDocumentStore  # noqa: E402


@pytest.fixture(autouse=True)
def clear_background_tasks():
    """Drop references to memory maintenance tasks left over from a finished test."""
    yield
    streaming._background_tasks.clear()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def blob_storage():
    return InMemoryBlobStorage()


@pytest.fixture
def chats(store):
    return ChatRepository(store)
