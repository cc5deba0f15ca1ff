"""Retrieval orchestrator: the single entry point used by the CLI and web app."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping

from docrag.cache import (
    DOCUMENTS_PREFIX,
    CacheTransport,
    MemoryCacheTransport,
    NullCacheTransport,
    ResultCache,
    SQLiteCacheTransport,
)
from docrag.config import AppConfig
from docrag.embedding.batch import EmbeddingBatchProcessor
from docrag.embedding.encoder import Embedder, EmbeddingConfig, EmbeddingModel
from docrag.embedding.remote import InferenceAPIEmbedder
from docrag.errors import DocumentNotFoundError
from docrag.generation.answerer import Answerer
from docrag.generation.llm import DEFAULT_BASE_URL, DEFAULT_MODEL, ChatCompletionClient, TextGenerator
from docrag.index.indexer import Indexer
from docrag.index.search import Searcher
from docrag.index.storage import SQLiteVectorStore
from docrag.ingestion.extractor import TextExtractor
from docrag.models import Document, IngestionResult, RagAnswer, SearchOptions, SearchResult

LOGGER = logging.getLogger(__name__)

DOCUMENTS_KEY = DOCUMENTS_PREFIX + "all"


class RetrievalOrchestrator:
    """Composes ingestion, search and answering over one store and cache."""

    def __init__(
        self,
        embedder: Embedder,
        store: SQLiteVectorStore,
        *,
        cache: ResultCache | None = None,
        generator: TextGenerator | None = None,
        extractor: TextExtractor | None = None,
        config: AppConfig | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.store = store
        self.cache = cache or ResultCache(NullCacheTransport())
        self.processor = EmbeddingBatchProcessor(
            embedder,
            batch_size=self.config.batch_size,
            timeout=self.config.embedding_timeout,
            max_workers=self.config.embedding_workers,
        )
        self.indexer = Indexer(
            self.processor,
            store,
            extractor=extractor,
            cache=self.cache,
            chunk_chars=self.config.chunk_chars,
            overlap=self.config.overlap,
            max_workers=self.config.embedding_workers,
            retries=self.config.embedding_retries,
            retry_wait=self.config.retry_wait,
        )
        self.searcher = Searcher(self.processor, store, self.cache, cache_ttl=self.config.cache_ttl)
        self.answerer = Answerer(self.searcher, generator)

    def close(self) -> None:
        self.processor.close()
        self.store.close()
        transport = self.cache.transport
        if isinstance(transport, SQLiteCacheTransport):
            transport.close()

    # -- ingestion ------------------------------------------------------------

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
        return self.indexer.ingest(
            data,
            filename,
            mime_type,
            metadata=metadata,
            document_id=document_id,
            cancel_event=cancel_event,
        )

    def ingest_text(self, title: str, text: str, **kwargs: Any) -> IngestionResult:
        return self.indexer.ingest_text(title, text, **kwargs)

    def ingest_path(self, path: Path, **kwargs: Any) -> IngestionResult:
        return self.indexer.ingest_path(Path(path), **kwargs)

    def delete_document(self, document_id: str) -> bool:
        deleted = self.store.delete_document(document_id)
        if deleted:
            LOGGER.info("Deleted document %s", document_id)
            self.indexer.invalidate_cache()
        return deleted

    def update_metadata(self, document_id: str, metadata: Dict[str, Any]) -> Document:
        """Replace a document's metadata; the cached listing is swept."""
        if not self.store.update_metadata(document_id, metadata):
            raise DocumentNotFoundError(document_id)
        self.indexer.invalidate_cache()
        return self.get_document(document_id)

    # -- retrieval ------------------------------------------------------------

    def _options(self, options: SearchOptions | None) -> SearchOptions:
        if options is not None:
            return options
        return SearchOptions(limit=self.config.search_limit, threshold=self.config.similarity_threshold)

    def search(self, query: str, options: SearchOptions | None = None) -> List[SearchResult]:
        return self.searcher.search(query, self._options(options))

    def hybrid_search(self, query: str, options: SearchOptions | None = None) -> List[SearchResult]:
        return self.searcher.hybrid_search(query, self._options(options))

    def answer(
        self,
        question: str,
        *,
        max_sources: int | None = None,
        document_id: str | None = None,
        threshold: float | None = None,
        hybrid: bool = False,
    ) -> RagAnswer:
        return self.answerer.answer(
            question,
            max_sources=self.config.max_sources if max_sources is None else max_sources,
            document_id=document_id,
            threshold=self.config.similarity_threshold if threshold is None else threshold,
            hybrid=hybrid,
        )

    # -- documents ------------------------------------------------------------

    def list_documents(self) -> List[Dict[str, Any]]:
        cached = self.cache.get(DOCUMENTS_KEY)
        if cached is not None:
            return cached
        documents = self.store.list_documents()
        self.cache.put_forever(DOCUMENTS_KEY, documents)
        return documents

    def get_document(self, document_id: str) -> Document:
        document = self.store.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    def get_stats(self) -> Dict[str, int]:
        return self.store.get_stats()


def build_cache(config: AppConfig) -> ResultCache:
    transport: CacheTransport
    if config.cache_backend == "memory":
        transport = MemoryCacheTransport()
    elif config.cache_backend == "sqlite":
        db_path = config.resolve_db_path()
        transport = SQLiteCacheTransport(db_path.with_name(db_path.stem + "-cache.db"))
    else:
        transport = NullCacheTransport()
    return ResultCache(transport, default_ttl=config.cache_ttl)


def build_orchestrator(config: AppConfig | None = None) -> RetrievalOrchestrator:
    """Wire the default collaborators described by ``config``."""
    config = (config or AppConfig.from_env()).validate()

    embedder: Embedder
    if config.embedding_api_url:
        embedder = InferenceAPIEmbedder(
            config.embedding_api_url,
            api_key=config.embedding_api_key,
            timeout=config.embedding_timeout,
        )
        dimension = config.embedding_dimension
    else:
        model = EmbeddingModel(EmbeddingConfig(model_name=config.model_name))
        embedder = model
        dimension = model.dimension

    generator = None
    if config.llm_api_key or config.llm_base_url:
        generator = ChatCompletionClient(
            base_url=config.llm_base_url or DEFAULT_BASE_URL,
            model=config.llm_model or DEFAULT_MODEL,
            api_key=config.llm_api_key,
        )

    db_path = config.resolve_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = SQLiteVectorStore(db_path, dimension=dimension)
    return RetrievalOrchestrator(
        embedder,
        store,
        cache=build_cache(config),
        generator=generator,
        config=config,
    )
