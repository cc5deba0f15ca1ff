"""Tests for the embedding batch processor."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from docrag.embedding.batch import EmbeddingBatch, EmbeddingBatchProcessor, iter_batches, validate_texts
from docrag.errors import EmbeddingError, EmbeddingShapeError, InvalidInputError

from conftest import FakeEmbedder, fake_vector


@pytest.fixture
def processor_factory():
    created = []

    def factory(embedder, **kwargs):
        processor = EmbeddingBatchProcessor(embedder, **kwargs)
        created.append(processor)
        return processor

    yield factory
    for processor in created:
        processor.close()


class TestIterBatches:
    """Tests for iter_batches."""

    def test_partition(self) -> None:
        batches = iter_batches(["a", "b", "c", "d", "e"], 2)

        assert [batch.texts for batch in batches] == [["a", "b"], ["c", "d"], ["e"]]
        assert [batch.start for batch in batches] == [0, 2, 4]
        assert [batch.index for batch in batches] == [0, 1, 2]
        assert batches[-1].stop == 5

    def test_empty(self) -> None:
        assert iter_batches([], 10) == []

    def test_invalid_size(self) -> None:
        with pytest.raises(InvalidInputError):
            iter_batches(["a"], 0)


class TestValidateTexts:
    def test_rejects_empty_list(self) -> None:
        with pytest.raises(InvalidInputError):
            validate_texts([])

    def test_rejects_blank_element(self) -> None:
        with pytest.raises(InvalidInputError) as excinfo:
            validate_texts(["fine", "   "])
        assert excinfo.value.context["value"] == 1


class TestEmbedBatches:
    """Order preservation and all-or-nothing batches."""

    def test_order_preserved_across_batches(self, processor_factory) -> None:
        embedder = FakeEmbedder()
        processor = processor_factory(embedder, batch_size=2)
        chunks = [f"chunk {i}" for i in range(5)]

        results = processor.embed_batches(chunks)

        assert [index for index, _ in results] == [0, 1, 2, 3, 4]
        assert [vector for _, vector in results] == [fake_vector(chunk) for chunk in chunks]
        assert embedder.calls == [["chunk 0", "chunk 1"], ["chunk 2", "chunk 3"], ["chunk 4"]]

    def test_embed_batch_offsets_indices(self, processor_factory) -> None:
        processor = processor_factory(FakeEmbedder())
        batch = EmbeddingBatch(index=3, start=30, texts=["x", "y"])

        assert [index for index, _ in processor.embed_batch(batch)] == [30, 31]

    def test_count_mismatch_fails_whole_batch(self, processor_factory) -> None:
        embedder = MagicMock()
        embedder.embed.return_value = [[0.1, 0.2]]
        processor = processor_factory(embedder, batch_size=2)

        with pytest.raises(EmbeddingShapeError) as excinfo:
            processor.embed_batches(["one", "two"])

        assert excinfo.value.retryable is False
        assert excinfo.value.context["batch_index"] == 0

    def test_empty_text_rejected_before_any_call(self, processor_factory) -> None:
        embedder = FakeEmbedder()
        processor = processor_factory(embedder)

        with pytest.raises(InvalidInputError):
            processor.embed_batches(["ok", ""])
        assert embedder.calls == []

    def test_provider_exception_wrapped(self, processor_factory) -> None:
        processor = processor_factory(FakeEmbedder(failures=1))

        with pytest.raises(EmbeddingError) as excinfo:
            processor.embed_one("query")

        assert excinfo.value.retryable is True
        assert excinfo.value.context["operation"] == "embed_one"
        assert isinstance(excinfo.value.cause, ConnectionError)

    def test_provider_embedding_error_keeps_flag(self, processor_factory) -> None:
        embedder = FakeEmbedder(
            failures=1, error_factory=lambda: EmbeddingError("denied", retryable=False)
        )
        processor = processor_factory(embedder)

        with pytest.raises(EmbeddingError) as excinfo:
            processor.embed_batch(EmbeddingBatch(index=0, start=0, texts=["a"]))

        assert excinfo.value.retryable is False
        assert excinfo.value.context["batch_index"] == 0

    def test_timeout_is_retryable(self, processor_factory) -> None:
        release = threading.Event()
        embedder = FakeEmbedder(on_call=lambda texts: release.wait(5))
        processor = processor_factory(embedder, timeout=0.05)

        try:
            with pytest.raises(EmbeddingError) as excinfo:
                processor.embed_one("slow")
        finally:
            release.set()

        assert excinfo.value.retryable is True
        assert "timed out" in excinfo.value.message

    def test_hung_calls_do_not_starve_later_calls(self, processor_factory) -> None:
        release = threading.Event()
        hanging = threading.Event()
        hanging.set()

        def stall(texts) -> None:
            if hanging.is_set():
                release.wait(5)

        processor = processor_factory(FakeEmbedder(on_call=stall), timeout=0.1)
        try:
            for _ in range(4):
                with pytest.raises(EmbeddingError):
                    processor.embed_one("slow")

            hanging.clear()
            assert processor.embed_one("fast") == fake_vector("fast")
            [(index, vector)] = processor.embed_batch(EmbeddingBatch(index=0, start=0, texts=["b"]))
            assert (index, vector) == (0, fake_vector("b"))
        finally:
            release.set()


class TestEmbedOne:
    def test_returns_vector(self, processor_factory) -> None:
        processor = processor_factory(FakeEmbedder())
        assert processor.embed_one("hello") == fake_vector("hello")

    def test_rejects_blank_query(self, processor_factory) -> None:
        embedder = FakeEmbedder()
        processor = processor_factory(embedder)

        with pytest.raises(InvalidInputError):
            processor.embed_one("  ")
        assert embedder.calls == []


class TestMapBatches:
    """Pipelined batches come back in order with failures as values."""

    def test_yields_in_order_with_concurrency(self, processor_factory) -> None:
        processor = processor_factory(FakeEmbedder(), batch_size=1, max_workers=3)
        batches = iter_batches([f"t{i}" for i in range(6)], 1)

        indices = [batch.index for batch, _ in processor.map_batches(batches)]

        assert indices == [0, 1, 2, 3, 4, 5]

    def test_failure_yielded_not_raised(self, processor_factory) -> None:
        processor = processor_factory(FakeEmbedder(failures=1), batch_size=1)
        batches = iter_batches(["a", "b"], 1)

        outcomes = list(processor.map_batches(batches))

        assert isinstance(outcomes[0][1], EmbeddingError)
        assert outcomes[1][1] == [(1, fake_vector("b"))]

    def test_closing_early_stops_submissions(self, processor_factory) -> None:
        embedder = FakeEmbedder()
        processor = processor_factory(embedder, batch_size=1)
        batches = iter_batches(["a", "b", "c", "d"], 1)

        stream = processor.map_batches(batches, max_workers=1)
        next(stream)
        stream.close()

        assert len(embedder.calls) <= 2
