"""
Per-user knowledge base: upload, chunking, naive relevance lookup and deletion.

Records live in the document store under users/<user_id>/knowledge_base, with
each document's chunks under users/<user_id>/knowledge_base/<document_id>/chunks.
The uploaded file itself goes to blob storage.
"""
import logging
import os
import time
from typing import List, Optional

from .chunking import chunk_id, extract_keywords, neighbour_ids, split_into_spans
from .extraction import ALLOWED_MIME_TYPES, extract_text
from .retrieval import DocumentRetriever, KeywordDocumentRetriever
from ..config import settings
from ..errors import DocumentDeletionError, DocumentNotFoundError, DocumentValidationError
from ..schemas import (
    DocumentChunk,
    DocumentMetadata,
    DocumentStatus,
    EmbeddingMetadata,
    IndexMetadata,
    KnowledgeBaseReference,
    KnowledgeDocument,
    ProcessingStage,
    to_record,
    utc_now,
)
from ..store.base import DocumentStore
from ..store.blob_storage import BlobNotFoundError, BlobStorage
from ..utils.codec import ContentCodec, PlainTextCodec

logger = logging.getLogger(__name__)

# Relevance score attached to every match until real scoring exists
PLACEHOLDER_RELEVANCE_SCORE = 0.8
EXCERPT_LENGTH = 300

# (stage, percent) checkpoints written while a document is processed
PROGRESS_CHECKPOINTS = {
    ProcessingStage.EXTRACTING: 10,
    ProcessingStage.CHUNKING: 30,
    ProcessingStage.STORING: 70,
    ProcessingStage.FINALIZING: 90,
    ProcessingStage.COMPLETED: 100,
}


class KnowledgeBaseManager:

    def __init__(
        self,
        user_id: str,
        store: DocumentStore,
        blob_storage: BlobStorage,
        codec: Optional[ContentCodec] = None,
        retriever: Optional[DocumentRetriever] = None,
        chunk_size: int = settings.CHUNK_SIZE,
        chunk_overlap: int = settings.CHUNK_OVERLAP,
        max_upload_bytes: int = settings.MAX_UPLOAD_BYTES,
    ):
        self.user_id = user_id
        self.store = store
        self.blob_storage = blob_storage
        self.codec = codec or PlainTextCodec()
        self.retriever = retriever or KeywordDocumentRetriever()
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.max_upload_bytes = max_upload_bytes

    @property
    def collection(self) -> str:
        return f"users/{self.user_id}/knowledge_base"

    def chunks_collection(self, document_id: str) -> str:
        return f"{self.collection}/{document_id}/chunks"

    # --- Upload & processing --- #

    def validate_file(self, file_name: str, mime_type: str, size: int) -> None:
        """Raises DocumentValidationError with a user-facing reason."""
        if mime_type not in ALLOWED_MIME_TYPES:
            raise DocumentValidationError(f"Unsupported file type: {mime_type}")
        if size > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes // (1024 * 1024)
            raise DocumentValidationError(f"File size exceeds {limit_mb}MB limit")
        if size == 0:
            raise DocumentValidationError(f"File is empty: {file_name}")

    async def upload_document(self, file_name: str, mime_type: str, data: bytes) -> str:
        """Validates, stores and processes an uploaded file. Returns the document id."""
        self.validate_file(file_name, mime_type, len(data))

        document_id = await self._create_document_record(file_name, mime_type, len(data))
        storage_path = await self._upload_file(document_id, file_name, mime_type, data)
        logger.info(f"Stored upload {file_name} for user {self.user_id} at {storage_path}")

        await self.process_document(document_id, data, mime_type, file_name)
        return document_id

    async def _create_document_record(self, file_name: str, mime_type: str, size: int) -> str:
        document = KnowledgeDocument(
            id=self.store.new_id(),
            user_id=self.user_id,
            file_name=f"{int(time.time() * 1000)}-{file_name}",
            original_file_name=file_name,
            mime_type=mime_type,
            file_size=size,
            uploaded_at=utc_now(),
            status=DocumentStatus.UPLOADING,
            metadata=DocumentMetadata(title=os.path.splitext(file_name)[0]),
            index_metadata=IndexMetadata(embedding_model=settings.EMBEDDING_MODEL_NAME),
        )
        await self.store.set(self.collection, document.id, to_record(document))
        return document.id

    async def _upload_file(self, document_id: str, file_name: str, mime_type: str, data: bytes) -> str:
        storage_path = f"{self.collection}/{document_id}/{os.path.basename(file_name)}"
        await self.blob_storage.save(storage_path, data, mime_type)
        await self.store.update(
            self.collection, document_id,
            {"storage_path": storage_path, "status": DocumentStatus.PROCESSING.value},
        )
        return storage_path

    async def process_document(self, document_id: str, data: bytes, mime_type: str, file_name: str) -> None:
        """
        Extracts, chunks and stores a document, writing progress checkpoints.
        Any failure leaves the document in the terminal `error` state and re-raises.
        """
        try:
            await self._update_progress(document_id, ProcessingStage.EXTRACTING)
            text = extract_text(data, mime_type, file_name)

            await self._update_progress(document_id, ProcessingStage.CHUNKING)
            chunks = self.create_document_chunks(text, document_id)

            await self._update_progress(document_id, ProcessingStage.STORING)
            await self._replace_document_chunks(document_id, chunks)

            await self._update_progress(document_id, ProcessingStage.FINALIZING)
            now = utc_now()
            await self.store.update(self.collection, document_id, {
                "status": DocumentStatus.READY.value,
                "processed_at": now,
                "processing_metadata.total_chunks": len(chunks),
                "processing_metadata.total_tokens": sum(chunk.token_count for chunk in chunks),
                "processing_metadata.progress": PROGRESS_CHECKPOINTS[ProcessingStage.COMPLETED],
                "processing_metadata.stage": ProcessingStage.COMPLETED.value,
                "processing_metadata.last_updated": now,
                "processing_metadata.error_message": None,
                "metadata.keywords": extract_keywords(text),
                "index_metadata.index_id": document_id,
                "index_metadata.last_indexed": now,
            })
            logger.info(f"Document {document_id} ready: {len(chunks)} chunks")

        except Exception as e:
            logger.exception(f"Error processing document {document_id}")
            await self.store.update(self.collection, document_id, {
                "status": DocumentStatus.ERROR.value,
                "processing_metadata.error_message": str(e) or e.__class__.__name__,
            })
            raise

    async def reprocess_document(self, document_id: str) -> None:
        """Regenerates the full chunk set of a stored document from its uploaded file."""
        document = await self.get_document(document_id)
        try:
            data = await self.blob_storage.load(document.storage_path)
        except BlobNotFoundError:
            raise DocumentNotFoundError(f"Stored file for document {document_id} is missing") from None

        await self.store.update(self.collection, document_id, {"status": DocumentStatus.PROCESSING.value})
        await self.process_document(document_id, data, document.mime_type, document.original_file_name)

    async def _update_progress(self, document_id: str, stage: ProcessingStage) -> None:
        await self.store.update(self.collection, document_id, {
            "processing_metadata.progress": PROGRESS_CHECKPOINTS[stage],
            "processing_metadata.stage": stage.value,
            "processing_metadata.last_updated": utc_now(),
        })

    def create_document_chunks(self, content: str, document_id: str) -> List[DocumentChunk]:
        spans = split_into_spans(content, self.chunk_size, self.chunk_overlap)
        created_at = utc_now()
        chunks = []
        for span in spans:
            previous_id, next_id = neighbour_ids(document_id, span, len(spans))
            chunks.append(DocumentChunk(
                id=chunk_id(document_id, span.index),
                document_id=document_id,
                chunk_index=span.index,
                content=self.codec.encode(span.text),
                token_count=span.token_count,
                start_position=span.start,
                end_position=span.end,
                embedding_metadata=EmbeddingMetadata(
                    model=settings.EMBEDDING_MODEL_NAME,
                    dimensions=settings.EMBEDDING_DIMENSIONS,
                    created_at=created_at,
                ),
                previous_chunk_id=previous_id,
                next_chunk_id=next_id,
                keywords=extract_keywords(span.text),
            ))
        return chunks

    async def _replace_document_chunks(self, document_id: str, chunks: List[DocumentChunk]) -> None:
        """Old chunk set out, new chunk set in, as one batch."""
        collection = self.chunks_collection(document_id)
        existing = await self.store.query(collection)
        batch = self.store.batch()
        for record in existing:
            batch.delete(collection, record["id"])
        for chunk in chunks:
            batch.set(collection, chunk.id, to_record(chunk))
        await batch.commit()

    # --- Lookup --- #

    async def query_knowledge_base(self, query: str, limit: int = 5) -> List[KnowledgeDocument]:
        """Ready, active documents relevant to the query, most recently uploaded first."""
        records = await self.store.query(
            self.collection,
            filters={"status": DocumentStatus.READY.value, "is_active": True},
            order_by="uploaded_at",
            descending=True,
        )
        documents = [KnowledgeDocument.model_validate(record) for record in records]
        return self.retriever.rank(query, documents, limit)

    async def find_relevant_references(self, query: str, limit: int = 3) -> List[KnowledgeBaseReference]:
        documents = await self.query_knowledge_base(query, limit)
        references = []
        for document in documents:
            first_chunk_id = chunk_id(document.id, 0)
            first_chunk = await self.store.get(self.chunks_collection(document.id), first_chunk_id)
            if first_chunk:
                excerpt = self.codec.decode(first_chunk["content"])[:EXCERPT_LENGTH]
            else:
                excerpt = document.metadata.title
            references.append(KnowledgeBaseReference(
                document_id=document.id,
                document_title=document.metadata.title,
                relevance_score=PLACEHOLDER_RELEVANCE_SCORE,
                excerpt=excerpt,
                chunk_id=first_chunk_id,
            ))
        return references

    async def get_user_documents(self) -> List[KnowledgeDocument]:
        records = await self.store.query(self.collection, order_by="uploaded_at", descending=True)
        return [KnowledgeDocument.model_validate(record) for record in records]

    async def get_document(self, document_id: str) -> KnowledgeDocument:
        record = await self.store.get(self.collection, document_id)
        if record is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")
        return KnowledgeDocument.model_validate(record)

    async def get_document_chunks(self, document_id: str, decode: bool = True) -> List[DocumentChunk]:
        """A document's chunk set ordered by chunk index."""
        records = await self.store.query(self.chunks_collection(document_id), order_by="chunk_index")
        chunks = [DocumentChunk.model_validate(record) for record in records]
        if decode:
            chunks = [chunk.model_copy(update={"content": self.codec.decode(chunk.content)}) for chunk in chunks]
        return chunks

    # --- Deletion --- #

    async def delete_document(self, document_id: str) -> None:
        """
        Deletes the stored file, then the chunk set (one batch), then the record.

        The document is taken out of circulation first. If a later step fails it
        stays inactive, is marked `error`, and DocumentDeletionError is raised.
        """
        document = await self.get_document(document_id)
        await self.store.update(
            self.collection, document_id,
            {"is_active": False, "status": DocumentStatus.DELETING.value},
        )

        try:
            if document.storage_path:
                try:
                    await self.blob_storage.delete(document.storage_path)
                except BlobNotFoundError:
                    logger.warning(f"Stored file already missing for document {document_id}: {document.storage_path}")

            collection = self.chunks_collection(document_id)
            chunk_records = await self.store.query(collection)
            batch = self.store.batch()
            for record in chunk_records:
                batch.delete(collection, record["id"])
            await batch.commit()

            await self.store.delete(self.collection, document_id)
            logger.info(f"Deleted document {document_id} and {len(chunk_records)} chunks")

        except Exception as e:
            logger.exception(f"Error deleting document {document_id}")
            await self.store.update(self.collection, document_id, {
                "status": DocumentStatus.ERROR.value,
                "processing_metadata.error_message": f"Deletion failed: {e}",
            })
            raise DocumentDeletionError(f"Could not delete document {document_id}: {e}") from e
