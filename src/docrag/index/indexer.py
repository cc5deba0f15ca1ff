"""Document ingestion pipeline.

One run walks ``Extracting -> Chunking -> EmbeddingBatch(0..n) -> Persisted ->
CacheInvalidated``. Every embedding batch is committed on its own: a failure
in batch ``k`` leaves batches ``0..k-1`` in the store, and re-ingesting the
same document id overwrites them in place.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping

from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
    wait_none,
)

from docrag.cache import ResultCache
from docrag.embedding.batch import EmbeddingBatch, EmbeddingBatchProcessor, IndexedEmbedding, iter_batches
from docrag.errors import (
    DocRagError,
    EmbeddingError,
    IngestionCancelledError,
    IngestionError,
    InvalidInputError,
    StoreError,
)
from docrag.index.storage import SQLiteVectorStore
from docrag.ingestion.extractor import TextExtractor
from docrag.models import ChunkRecord, Document, IngestionResult, new_id
from docrag.utils.files import compute_sha256, guess_mime_type
from docrag.utils.text import chunk_text

LOGGER = logging.getLogger(__name__)


class IngestionStage(str, Enum):
    EXTRACTING = "Extracting"
    CHUNKING = "Chunking"
    EMBEDDING = "EmbeddingBatch"
    PERSISTED = "Persisted"
    CACHE_INVALIDATED = "CacheInvalidated"


def validate_chunking(chunk_chars: int, overlap: int) -> None:
    if chunk_chars < 1:
        raise InvalidInputError("Chunk size must be positive", field="chunk_chars", value=chunk_chars)
    if overlap < 0 or overlap >= chunk_chars:
        raise InvalidInputError(
            "Chunk overlap must be non-negative and smaller than the chunk size",
            field="overlap",
            value=overlap,
        )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, EmbeddingError) and exc.retryable


class Indexer:
    """Coordinates document extraction, chunking, embedding and persistence."""

    def __init__(
        self,
        processor: EmbeddingBatchProcessor,
        store: SQLiteVectorStore,
        *,
        extractor: TextExtractor | None = None,
        cache: ResultCache | None = None,
        chunk_chars: int = 1000,
        overlap: int = 200,
        max_workers: int = 1,
        retries: int = 3,
        retry_wait: float = 1.0,
    ) -> None:
        validate_chunking(chunk_chars, overlap)
        self.processor = processor
        self.store = store
        self.extractor = extractor or TextExtractor()
        self.cache = cache
        self.chunk_chars = chunk_chars
        self.overlap = overlap
        self.max_workers = max(1, max_workers)
        self.retries = max(1, retries)
        self.retry_wait = retry_wait

    # -- entry points ---------------------------------------------------------

    def ingest(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        document_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> IngestionResult:
        """Extract text from a file payload and ingest it."""
        LOGGER.info("[%s] %s (%s)", IngestionStage.EXTRACTING.value, filename, mime_type)
        text = self.extractor.extract(data, mime_type)
        if not text or not text.strip():
            raise InvalidInputError(
                "No text could be extracted from the file", field="file", value=filename
            )

        file_metadata: Dict[str, Any] = {
            "fileName": filename,
            "mimeType": mime_type,
            "textLength": len(text),
            "sha256": compute_sha256(data),
        }
        file_metadata.update(metadata or {})
        return self.ingest_text(
            filename,
            text,
            file_type=mime_type,
            metadata=file_metadata,
            document_id=document_id,
            cancel_event=cancel_event,
        )

    def ingest_path(self, path: Path, **kwargs: Any) -> IngestionResult:
        mime_type = guess_mime_type(path)
        if mime_type is None:
            raise InvalidInputError("Unsupported file extension", field="path", value=str(path))
        return self.ingest(path.read_bytes(), path.name, mime_type, **kwargs)

    def ingest_text(
        self,
        title: str,
        text: str,
        *,
        file_type: str | None = "text/plain",
        metadata: Mapping[str, Any] | None = None,
        document_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> IngestionResult:
        """Chunk, embed and persist already extracted text."""
        if not text or not text.strip():
            raise InvalidInputError("Document text cannot be empty", field="text", value=text)

        LOGGER.info("[%s] %s characters", IngestionStage.CHUNKING.value, len(text))
        chunks = chunk_text(text, max_chars=self.chunk_chars, overlap=self.overlap)
        chunks = [chunk for chunk in chunks if chunk.strip()]
        LOGGER.info("Created %s chunks", len(chunks))

        document = Document(
            id=document_id or new_id(),
            title=title,
            text=text,
            file_type=file_type,
            metadata=dict(metadata or {}),
        )
        try:
            document = self.store.upsert_document(document)
        except StoreError as exc:
            raise IngestionError(
                "Failed to save document",
                stage=IngestionStage.CHUNKING.value,
                context={"document_id": document.id},
                cause=exc,
            ) from exc
        LOGGER.info("Document saved: %s", document.id)

        batch_count = self._embed_and_persist(document, chunks, cancel_event)

        try:
            self.store.delete_chunks_from(document.id, len(chunks))
        except StoreError as exc:
            raise IngestionError(
                "Failed to remove stale chunks",
                stage=IngestionStage.PERSISTED.value,
                context={"document_id": document.id},
                cause=exc,
            ) from exc
        LOGGER.info(
            "[%s] document %s with %s chunks", IngestionStage.PERSISTED.value, document.id, len(chunks)
        )

        invalidated = self.invalidate_cache()
        if invalidated:
            LOGGER.info("[%s] document %s", IngestionStage.CACHE_INVALIDATED.value, document.id)
        else:
            LOGGER.warning("Cache invalidation failed after ingesting %s", document.id)

        return IngestionResult(
            document=document,
            chunk_count=len(chunks),
            batch_count=batch_count,
            cache_invalidated=invalidated,
        )

    def invalidate_cache(self) -> bool:
        if self.cache is None:
            return True
        return self.cache.invalidate_documents()

    # -- batches --------------------------------------------------------------

    def _embed_and_persist(
        self,
        document: Document,
        chunks: List[str],
        cancel_event: threading.Event | None,
    ) -> int:
        batches = iter_batches(chunks, self.processor.batch_size)
        total = len(batches)
        committed = 0

        outcomes = self.processor.map_batches(batches, max_workers=self.max_workers)
        try:
            for batch, outcome in outcomes:
                if cancel_event is not None and cancel_event.is_set():
                    raise IngestionCancelledError(
                        "Ingestion cancelled",
                        stage=IngestionStage.EMBEDDING.value,
                        context={"document_id": document.id, "committed_batches": committed},
                    )

                LOGGER.info("Processing batch %s/%s", batch.index + 1, total)
                if isinstance(outcome, EmbeddingError):
                    embeddings = self._retry_batch(document, batch, outcome, committed)
                else:
                    embeddings = outcome

                records = [
                    ChunkRecord(
                        document_id=document.id,
                        index=index,
                        text=chunks[index],
                        embedding=vector,
                        metadata={"chunkLength": len(chunks[index])},
                    )
                    for index, vector in embeddings
                ]
                try:
                    self.store.upsert_chunks(document.id, records, batch_index=batch.index)
                except StoreError as exc:
                    raise IngestionError(
                        f"Failed to persist batch {batch.index}",
                        stage=IngestionStage.EMBEDDING.value,
                        context={
                            "document_id": document.id,
                            "batch_index": batch.index,
                            "committed_batches": committed,
                        },
                        cause=exc,
                    ) from exc
                committed += 1
        finally:
            outcomes.close()
        return committed

    def _retry_batch(
        self,
        document: Document,
        batch: EmbeddingBatch,
        error: EmbeddingError,
        committed: int,
    ) -> List[IndexedEmbedding]:
        context = {
            "document_id": document.id,
            "batch_index": batch.index,
            "committed_batches": committed,
        }
        if not error.retryable or self.retries <= 1:
            raise IngestionError(
                f"Embedding batch {batch.index} failed",
                stage=IngestionStage.EMBEDDING.value,
                context=context,
                cause=error,
            ) from error

        LOGGER.warning("Batch %s failed (%s), retrying", batch.index, error)
        wait = (
            wait_exponential_jitter(initial=self.retry_wait, max=30)
            if self.retry_wait > 0
            else wait_none()
        )
        retrying = Retrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.retries - 1),
            wait=wait,
            reraise=True,
            before_sleep=lambda state: LOGGER.warning(
                "Retry %s for batch %s of %s", state.attempt_number, batch.index, document.id
            ),
        )
        try:
            return retrying(self.processor.embed_batch, batch)
        except DocRagError as exc:
            raise IngestionError(
                f"Embedding batch {batch.index} failed after {self.retries} attempts",
                stage=IngestionStage.EMBEDDING.value,
                context=context,
                cause=exc,
            ) from exc
