"""Semantic and hybrid search interface."""

from __future__ import annotations

import logging
from typing import List

from docrag.cache import ResultCache, fingerprint
from docrag.embedding.batch import EmbeddingBatchProcessor
from docrag.errors import InvalidInputError
from docrag.index.storage import SQLiteVectorStore
from docrag.models import SearchOptions, SearchResult

LOGGER = logging.getLogger(__name__)

MIN_LIMIT = 1
MAX_LIMIT = 100


def validate_search(query: str, options: SearchOptions) -> None:
    """Reject bad queries and options before any I/O happens."""
    if not isinstance(query, str) or not query.strip():
        raise InvalidInputError(
            "Search query cannot be empty or contain only whitespace", field="query", value=query
        )
    if isinstance(options.limit, bool) or not isinstance(options.limit, int):
        raise InvalidInputError("Search limit must be an integer", field="limit", value=options.limit)
    if not MIN_LIMIT <= options.limit <= MAX_LIMIT:
        raise InvalidInputError(
            f"Search limit must be between {MIN_LIMIT} and {MAX_LIMIT}",
            field="limit",
            value=options.limit,
        )
    if not 0.0 <= options.threshold <= 1.0:
        raise InvalidInputError(
            "Similarity threshold must be between 0 and 1",
            field="threshold",
            value=options.threshold,
        )


class Searcher:
    """High-level API to query the vector store.

    Flow: validate, look up the cache, embed the query, rank, store the
    ranking in the cache (best effort) and return it.
    """

    def __init__(
        self,
        processor: EmbeddingBatchProcessor,
        store: SQLiteVectorStore,
        cache: ResultCache | None = None,
        *,
        cache_ttl: int | None = None,
    ) -> None:
        self.processor = processor
        self.store = store
        self.cache = cache
        self.cache_ttl = cache_ttl

    def search(self, query: str, options: SearchOptions | None = None) -> List[SearchResult]:
        """Pure vector search: cosine similarity, descending."""
        return self._run(query, options or SearchOptions(), mode="vector")

    def hybrid_search(self, query: str, options: SearchOptions | None = None) -> List[SearchResult]:
        """Vector similarity blended with lexical rank; lexical match is required."""
        return self._run(query, options or SearchOptions(), mode="hybrid")

    def _run(self, query: str, options: SearchOptions, *, mode: str) -> List[SearchResult]:
        validate_search(query, options)

        key = fingerprint(
            query,
            limit=options.limit,
            threshold=options.threshold,
            document_id=options.document_id,
            mode=mode,
        )
        use_cache = options.use_cache and self.cache is not None
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                try:
                    results = [SearchResult.from_dict(item) for item in cached]
                except (KeyError, TypeError, ValueError) as exc:
                    LOGGER.warning("Ignoring unreadable cache entry %s: %s", key, exc)
                else:
                    LOGGER.debug("%s search result retrieved from cache", mode)
                    return results

        embedding = self.processor.embed_one(query.strip())
        if mode == "hybrid":
            results = self.store.hybrid_search(
                embedding, query, options.limit, options.threshold, options.document_id
            )
        else:
            results = self.store.similarity_search(
                embedding, options.limit, options.threshold, options.document_id
            )
        LOGGER.info("%s search returned %s results", mode.capitalize(), len(results))

        if use_cache and results:
            self.cache.put(key, [result.to_dict() for result in results], self.cache_ttl)
        return results
