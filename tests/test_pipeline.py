"""End-to-end tests for the retrieval orchestrator with in-memory collaborators."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from docrag.cache import MemoryCacheTransport, NullCacheTransport, SQLiteCacheTransport
from docrag.config import AppConfig
from docrag.errors import DocumentNotFoundError, InvalidInputError
from docrag.generation.answerer import NO_RELEVANT_INFORMATION
from docrag.models import SearchOptions
from docrag.pipeline import DOCUMENTS_KEY, build_cache, build_orchestrator

from conftest import boundaryless_text


class TestIngestAndSearch:
    """Ingest then retrieve through the orchestrator."""

    def test_chunk_query_returns_that_chunk_first(self, orchestrator) -> None:
        text = boundaryless_text(2500)
        result = orchestrator.ingest_text("Letters", text, document_id="doc-1")
        assert result.chunk_count == 3

        results = orchestrator.search(text[800:1800], SearchOptions(limit=3, threshold=0.0))

        assert results[0].chunk.chunk_index == 1
        assert results[0].similarity == 1.0
        assert results[0].document.title == "Letters"

    def test_search_validation_before_embedding(self, orchestrator, embedder) -> None:
        with pytest.raises(InvalidInputError):
            orchestrator.search("")
        with pytest.raises(InvalidInputError):
            orchestrator.search("q", SearchOptions(limit=150))
        assert embedder.calls == []

    def test_default_options_from_config(self, orchestrator) -> None:
        orchestrator.ingest_text("Doc", "alpha beta", document_id="doc-1")

        results = orchestrator.search("alpha beta")

        assert results[0].chunk.document_id == "doc-1"

    def test_hybrid_search_requires_lexical_match(self, orchestrator) -> None:
        orchestrator.ingest_text("A", "Retrieval augmented generation", document_id="a")
        orchestrator.ingest_text("B", "Gardening in spring", document_id="b")

        results = orchestrator.hybrid_search(
            "Retrieval augmented generation", SearchOptions(limit=5, threshold=0.0)
        )

        assert [r.document.id for r in results] == ["a"]

    def test_ingest_invalidates_cached_search(self, orchestrator, embedder) -> None:
        orchestrator.ingest_text("A", "first document", document_id="a")
        orchestrator.search("first document")

        orchestrator.ingest_text("B", "second document", document_id="b")
        calls_before = len(embedder.calls)
        orchestrator.search("first document")

        assert len(embedder.calls) == calls_before + 1

    def test_repeat_search_served_from_cache(self, orchestrator, embedder) -> None:
        orchestrator.ingest_text("A", "cached text", document_id="a")
        calls_after_ingest = len(embedder.calls)

        orchestrator.search("cached text")
        orchestrator.search("cached text")

        assert len(embedder.calls) == calls_after_ingest + 1


class TestDocuments:
    def test_list_documents_cached_until_mutation(self, orchestrator, cache) -> None:
        orchestrator.ingest_text("A", "text a", document_id="a")

        assert [d["id"] for d in orchestrator.list_documents()] == ["a"]
        assert cache.get(DOCUMENTS_KEY) is not None

        orchestrator.ingest_text("B", "text b", document_id="b")
        assert {d["id"] for d in orchestrator.list_documents()} == {"a", "b"}

    def test_get_document(self, orchestrator) -> None:
        orchestrator.ingest_text("A", "text a", document_id="a")
        assert orchestrator.get_document("a").title == "A"

        with pytest.raises(DocumentNotFoundError):
            orchestrator.get_document("missing")

    def test_delete_document(self, orchestrator, store) -> None:
        orchestrator.ingest_text("A", "text a", document_id="a")
        orchestrator.search("text a")

        assert orchestrator.delete_document("a") is True
        assert store.count_chunks() == 0
        assert orchestrator.search("text a") == []
        assert orchestrator.delete_document("a") is False
        assert orchestrator.list_documents() == []

    def test_update_metadata_refreshes_listing(self, orchestrator) -> None:
        orchestrator.ingest_text("A", "text a", document_id="a", metadata={"tag": "old"})
        assert orchestrator.list_documents()[0]["metadata"]["tag"] == "old"

        document = orchestrator.update_metadata("a", {"tag": "new"})

        assert document.metadata == {"tag": "new"}
        assert orchestrator.list_documents()[0]["metadata"] == {"tag": "new"}

    def test_update_metadata_unknown_document(self, orchestrator) -> None:
        with pytest.raises(DocumentNotFoundError):
            orchestrator.update_metadata("missing", {})


class TestAnswer:
    def test_answer_with_context(self, orchestrator) -> None:
        orchestrator.ingest_text("A", "The capital of France is Paris", document_id="a")

        answer = orchestrator.answer("The capital of France is Paris", threshold=0.9)

        assert answer.found_context is True
        assert answer.answer == "Generated answer"
        assert answer.sources[0].document_id == "a"

    def test_answer_without_context(self, orchestrator) -> None:
        answer = orchestrator.answer("Nothing ingested yet")

        assert answer.answer == NO_RELEVANT_INFORMATION
        assert answer.found_context is False

    def test_zero_max_sources_rejected(self, orchestrator, embedder) -> None:
        with pytest.raises(InvalidInputError):
            orchestrator.answer("question", max_sources=0)
        assert embedder.calls == []


class TestBuilders:
    """Wiring of collaborators from configuration."""

    def test_build_cache_backends(self, tmp_path: Path) -> None:
        assert isinstance(
            build_cache(AppConfig(db_path=tmp_path / "a.db", cache_backend="memory")).transport,
            MemoryCacheTransport,
        )
        assert isinstance(
            build_cache(AppConfig(db_path=tmp_path / "a.db", cache_backend="none")).transport,
            NullCacheTransport,
        )
        cache = build_cache(AppConfig(db_path=tmp_path / "a.db", cache_backend="sqlite"))
        assert isinstance(cache.transport, SQLiteCacheTransport)
        assert (tmp_path / "a-cache.db").exists()
        cache.transport.close()

    @patch("docrag.pipeline.EmbeddingModel")
    def test_build_orchestrator_local_model(self, mock_model_class: MagicMock, tmp_path: Path) -> None:
        mock_model_class.return_value.dimension = 8
        config = AppConfig(db_path=tmp_path / "sub" / "rag.db", cache_backend="memory")

        orchestrator = build_orchestrator(config)

        assert orchestrator.store.dimension == 8
        assert orchestrator.answerer.generator is None
        assert (tmp_path / "sub" / "rag.db").exists()
        orchestrator.close()

    @patch("docrag.pipeline.InferenceAPIEmbedder")
    def test_build_orchestrator_remote(self, mock_remote: MagicMock, tmp_path: Path) -> None:
        config = AppConfig(
            db_path=tmp_path / "rag.db",
            cache_backend="none",
            embedding_api_url="http://embed.local",
            embedding_dimension=16,
            llm_api_key="key",
        )

        orchestrator = build_orchestrator(config)

        mock_remote.assert_called_once()
        assert orchestrator.store.dimension == 16
        assert orchestrator.answerer.generator is not None
        orchestrator.close()

    def test_build_orchestrator_validates(self, tmp_path: Path) -> None:
        with pytest.raises(InvalidInputError):
            build_orchestrator(AppConfig(db_path=tmp_path / "x.db", chunk_chars=100, overlap=100))
