"""Tests for knowledge base upload, processing, lookup and deletion."""

import pytest

from chat_engine.errors import DocumentDeletionError, DocumentNotFoundError, DocumentValidationError, StoreError
from chat_engine.knowledge.base import KnowledgeBaseManager
from chat_engine.knowledge.extraction import extract_text
from chat_engine.schemas import DocumentStatus, ProcessingStage
from chat_engine.store.blob_storage import BlobNotFoundError, LocalBlobStorage
from chat_engine.store.memory_store import InMemoryDocumentStore

ROVER_TEXT = (
    "The Mars rover Perseverance landed in Jezero Crater. "
    "The rover carries a drill, a sample caching system and the Ingenuity helicopter. "
) * 30


class RecordingStore(InMemoryDocumentStore):
    """Keeps every update() so progress checkpoints can be inspected."""

    def __init__(self):
        super().__init__()
        self.updates = []

    async def update(self, collection, record_id, fields):
        self.updates.append(dict(fields))
        await super().update(collection, record_id, fields)


class FailingBatchStore(InMemoryDocumentStore):
    def __init__(self):
        super().__init__()
        self.fail_batches = False

    async def _commit(self, operations):
        if self.fail_batches:
            raise StoreError("batch rejected")
        await super()._commit(operations)


class BrokenCodec:
    def encode(self, content):
        raise RuntimeError("codec unavailable")

    def decode(self, content):
        return content


def make_manager(store, blob_storage, **kwargs) -> KnowledgeBaseManager:
    return KnowledgeBaseManager("alice", store, blob_storage, chunk_size=1000, chunk_overlap=200, **kwargs)


@pytest.mark.asyncio
async def test_upload_processes_text_document(store, blob_storage):
    manager = make_manager(store, blob_storage)
    data = ROVER_TEXT.encode("utf-8")

    document_id = await manager.upload_document("mars-rover.txt", "text/plain", data)
    document = await manager.get_document(document_id)

    assert document.status == DocumentStatus.READY
    assert document.original_file_name == "mars-rover.txt"
    assert document.file_name.endswith("-mars-rover.txt")
    assert document.metadata.title == "mars-rover"
    assert "rover" in document.metadata.keywords
    assert document.processing_metadata.progress == 100
    assert document.processing_metadata.stage == ProcessingStage.COMPLETED
    assert document.processed_at is not None
    assert await blob_storage.load(document.storage_path) == data
    assert blob_storage.content_type(document.storage_path) == "text/plain"

    chunks = await manager.get_document_chunks(document_id)
    assert document.processing_metadata.total_chunks == len(chunks)
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
    assert chunks[0].previous_chunk_id is None
    assert chunks[0].next_chunk_id == chunks[1].id
    assert chunks[-1].end_position == len(ROVER_TEXT)
    assert document.processing_metadata.total_tokens == sum(c.token_count for c in chunks)


@pytest.mark.asyncio
async def test_progress_checkpoints_increase(blob_storage):
    store = RecordingStore()
    manager = make_manager(store, blob_storage)

    await manager.upload_document("notes.md", "text/markdown", b"# Notes\nSome markdown content.")

    progress = [u["processing_metadata.progress"] for u in store.updates if "processing_metadata.progress" in u]
    stages = [u["processing_metadata.stage"] for u in store.updates if "processing_metadata.stage" in u]
    assert progress == [10, 30, 70, 90, 100]
    assert stages == ["extracting", "chunking", "storing", "finalizing", "completed"]


@pytest.mark.parametrize("file_name, mime_type, size, reason", [
    ("image.png", "image/png", 10, "Unsupported file type"),
    ("big.txt", "text/plain", 2 * 1024 * 1024, "File size exceeds 1MB limit"),
    ("empty.txt", "text/plain", 0, "File is empty"),
])
def test_validation(store, blob_storage, file_name, mime_type, size, reason):
    manager = make_manager(store, blob_storage, max_upload_bytes=1024 * 1024)
    with pytest.raises(DocumentValidationError, match=reason):
        manager.validate_file(file_name, mime_type, size)


@pytest.mark.asyncio
async def test_rejected_upload_has_no_side_effects(store, blob_storage):
    manager = make_manager(store, blob_storage)
    with pytest.raises(DocumentValidationError):
        await manager.upload_document("image.png", "image/png", b"\x89PNG")
    assert await manager.get_user_documents() == []


@pytest.mark.asyncio
async def test_processing_failure_marks_error(store, blob_storage):
    manager = make_manager(store, blob_storage, codec=BrokenCodec())

    with pytest.raises(RuntimeError):
        await manager.upload_document("notes.txt", "text/plain", b"some text")

    [document] = await manager.get_user_documents()
    assert document.status == DocumentStatus.ERROR
    assert document.processing_metadata.error_message == "codec unavailable"


@pytest.mark.asyncio
async def test_deferred_types_get_placeholder_text(store, blob_storage):
    manager = make_manager(store, blob_storage)
    document_id = await manager.upload_document("paper.pdf", "application/pdf", b"%PDF-1.7 binary")

    [chunk] = await manager.get_document_chunks(document_id)
    assert chunk.content.startswith("[application/pdf file: paper.pdf]")


def test_html_extraction_drops_scripts():
    html = b"<html><head><style>p{}</style><script>alert(1)</script></head><body><h1>Title</h1><p>Body</p></body></html>"
    assert extract_text(html, "text/html", "page.html") == "Title\nBody"


@pytest.mark.asyncio
async def test_query_matches_title_or_keywords(store, blob_storage):
    manager = make_manager(store, blob_storage)
    rover_id = await manager.upload_document("mars-rover.txt", "text/plain", ROVER_TEXT.encode("utf-8"))
    await manager.upload_document("recipes.txt", "text/plain", b"Bread needs flour, water, yeast and time.")

    matches = await manager.query_knowledge_base("Rover")
    assert [d.id for d in matches] == [rover_id]

    matches = await manager.query_knowledge_base("jezero")
    assert [d.id for d in matches] == [rover_id]

    assert await manager.query_knowledge_base("spaceship") == []


@pytest.mark.asyncio
async def test_references_use_first_chunk_excerpt(store, blob_storage):
    manager = make_manager(store, blob_storage)
    rover_id = await manager.upload_document("mars-rover.txt", "text/plain", ROVER_TEXT.encode("utf-8"))

    [reference] = await manager.find_relevant_references("mars")

    assert reference.document_id == rover_id
    assert reference.document_title == "mars-rover"
    assert reference.relevance_score == 0.8
    assert reference.excerpt == ROVER_TEXT[:300]
    assert reference.chunk_id == f"{rover_id}-chunk-0"


@pytest.mark.asyncio
async def test_documents_of_other_users_are_invisible(store, blob_storage):
    await make_manager(store, blob_storage).upload_document("mars-rover.txt", "text/plain", b"rover notes")
    other = KnowledgeBaseManager("bob", store, blob_storage)
    assert await other.query_knowledge_base("rover") == []
    assert await other.get_user_documents() == []


@pytest.mark.asyncio
async def test_reprocess_replaces_chunk_set(store, blob_storage):
    manager = make_manager(store, blob_storage)
    document_id = await manager.upload_document("mars-rover.txt", "text/plain", ROVER_TEXT.encode("utf-8"))
    before = await manager.get_document_chunks(document_id)

    manager.chunk_size = 2000
    await manager.reprocess_document(document_id)
    after = await manager.get_document_chunks(document_id)

    assert len(after) < len(before)
    assert (await manager.get_document(document_id)).processing_metadata.total_chunks == len(after)


@pytest.mark.asyncio
async def test_delete_removes_file_chunks_and_record(store, blob_storage):
    manager = make_manager(store, blob_storage)
    document_id = await manager.upload_document("mars-rover.txt", "text/plain", ROVER_TEXT.encode("utf-8"))
    document = await manager.get_document(document_id)

    await manager.delete_document(document_id)

    with pytest.raises(DocumentNotFoundError):
        await manager.get_document(document_id)
    assert await manager.get_document_chunks(document_id) == []
    assert blob_storage.content_type(document.storage_path) is None


@pytest.mark.asyncio
async def test_failed_delete_leaves_document_inactive(blob_storage):
    """A failed chunk deletion keeps every chunk and marks the document as errored."""
    store = FailingBatchStore()
    manager = make_manager(store, blob_storage)
    document_id = await manager.upload_document("mars-rover.txt", "text/plain", ROVER_TEXT.encode("utf-8"))
    chunk_count = len(await manager.get_document_chunks(document_id))

    store.fail_batches = True
    with pytest.raises(DocumentDeletionError):
        await manager.delete_document(document_id)

    document = await manager.get_document(document_id)
    assert document.is_active is False
    assert document.status == DocumentStatus.ERROR
    assert document.processing_metadata.error_message.startswith("Deletion failed:")
    assert len(await manager.get_document_chunks(document_id)) == chunk_count
    assert await manager.query_knowledge_base("rover") == []


@pytest.mark.asyncio
async def test_local_blob_storage_round_trip(tmp_path):
    storage = LocalBlobStorage(str(tmp_path))
    await storage.save("users/alice/doc/file.txt", b"hello", "text/plain")
    assert await storage.load("users/alice/doc/file.txt") == b"hello"

    await storage.delete("users/alice/doc/file.txt")
    with pytest.raises(BlobNotFoundError):
        await storage.load("users/alice/doc/file.txt")
    with pytest.raises(ValueError):
        await storage.save("../outside.txt", b"x", "text/plain")
