"""Batched embedding generation with all-or-nothing batch semantics."""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Deque, Iterable, Iterator, List, Sequence, Tuple, Union

from docrag.embedding.encoder import Embedder
from docrag.embedding.shapes import decode_embeddings
from docrag.errors import EmbeddingError, InvalidInputError

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10

IndexedEmbedding = Tuple[int, List[float]]
BatchOutcome = Union[List[IndexedEmbedding], EmbeddingError]


@dataclass(slots=True)
class EmbeddingBatch:
    """Chunk texts covering global indices ``[start, start + len(texts))``."""

    index: int
    start: int
    texts: List[str]

    @property
    def stop(self) -> int:
        return self.start + len(self.texts)


def iter_batches(chunks: Sequence[str], batch_size: int = DEFAULT_BATCH_SIZE) -> List[EmbeddingBatch]:
    """Partition chunks into fixed-size batches, preserving order."""
    if batch_size < 1:
        raise InvalidInputError("Batch size must be at least 1", field="batch_size", value=batch_size)
    return [
        EmbeddingBatch(index=number, start=start, texts=list(chunks[start : start + batch_size]))
        for number, start in enumerate(range(0, len(chunks), batch_size))
    ]


def validate_texts(texts: Sequence[str]) -> None:
    if not texts:
        raise InvalidInputError("No texts to embed", field="texts", value=[])
    for position, text in enumerate(texts):
        if not isinstance(text, str) or not text.strip():
            raise InvalidInputError(
                "Cannot embed empty text", field="texts", value=position
            )


class EmbeddingBatchProcessor:
    """Sends chunk batches to an :class:`Embedder` and decodes the responses.

    A batch either yields one embedding per chunk, in input order, or raises
    :class:`EmbeddingError`; no partial batch is ever returned. Every provider
    call runs on a worker thread bounded by ``timeout`` seconds, and a timeout
    is reported as a retryable failure. A call still running after its timeout
    keeps its thread, so the pool is replaced and later calls get fresh workers.
    """

    def __init__(
        self,
        embedder: Embedder,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout: float | None = 30.0,
        max_workers: int = 1,
    ) -> None:
        if batch_size < 1:
            raise InvalidInputError("Batch size must be at least 1", field="batch_size", value=batch_size)
        self.embedder = embedder
        self.batch_size = batch_size
        self.timeout = timeout
        self.max_workers = max(1, max_workers)
        self._pool_lock = threading.Lock()
        self._pool = self._new_pool()

    def close(self) -> None:
        with self._pool_lock:
            self._pool.shutdown(wait=False, cancel_futures=True)

    # -- single calls ---------------------------------------------------------

    def embed_one(self, text: str) -> List[float]:
        """Embed a single query text."""
        validate_texts([text])
        future = self._submit([text])
        vectors = self._collect(future, expected=1, context={"operation": "embed_one"})
        return vectors[0]

    def embed_batch(self, batch: EmbeddingBatch) -> List[IndexedEmbedding]:
        validate_texts(batch.texts)
        future = self._submit(batch.texts)
        return self._pair(batch, future)

    def embed_batches(
        self, chunks: Sequence[str], batch_size: int | None = None
    ) -> List[IndexedEmbedding]:
        """Embed every chunk batch by batch, returning ``(chunk_index, embedding)``."""
        batches = iter_batches(chunks, batch_size or self.batch_size)
        for batch in batches:
            validate_texts(batch.texts)

        results: List[IndexedEmbedding] = []
        for batch, outcome in self.map_batches(batches):
            if isinstance(outcome, EmbeddingError):
                raise outcome
            results.extend(outcome)
        return results

    # -- pipelined calls ------------------------------------------------------

    def map_batches(
        self, batches: Iterable[EmbeddingBatch], *, max_workers: int | None = None
    ) -> Iterator[Tuple[EmbeddingBatch, BatchOutcome]]:
        """Yield ``(batch, embeddings or error)`` in batch order.

        Up to ``max_workers`` batches are in flight at once. Failures are
        yielded rather than raised so the caller can retry a single batch.
        Closing the iterator early cancels batches that have not started.
        """
        window = max(1, max_workers or self.max_workers)
        queue = list(batches)
        for batch in queue:
            validate_texts(batch.texts)

        source = iter(queue)
        pending: Deque[Tuple[EmbeddingBatch, Future]] = deque()

        def submit_next() -> bool:
            batch = next(source, None)
            if batch is None:
                return False
            pending.append((batch, self._submit(batch.texts)))
            return True

        try:
            while len(pending) < window and submit_next():
                pass
            while pending:
                batch, future = pending.popleft()
                outcome: BatchOutcome
                try:
                    outcome = self._pair(batch, future)
                except EmbeddingError as exc:
                    outcome = exc
                submit_next()
                yield batch, outcome
        finally:
            for _, future in pending:
                future.cancel()

    # -- internals ------------------------------------------------------------

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=max(self.max_workers, 4), thread_name_prefix="docrag-embed"
        )

    def _submit(self, texts: Sequence[str]) -> Future:
        with self._pool_lock:
            return self._pool.submit(self.embedder.embed, list(texts))

    def _abandon(self, future: Future) -> None:
        if future.cancel() or future.done():
            return
        with self._pool_lock:
            stale, self._pool = self._pool, self._new_pool()
        LOGGER.warning("Embedding call still running after timeout; replacing worker pool")
        stale.shutdown(wait=False)

    def _pair(self, batch: EmbeddingBatch, future: Future) -> List[IndexedEmbedding]:
        context = {
            "operation": "embed_batch",
            "batch_index": batch.index,
            "chunk_range": (batch.start, batch.stop),
        }
        vectors = self._collect(future, expected=len(batch.texts), context=context)
        LOGGER.debug("Embedded batch %s (%s chunks)", batch.index, len(vectors))
        return [(batch.start + offset, vector) for offset, vector in enumerate(vectors)]

    def _collect(self, future: Future, *, expected: int, context: dict) -> List[List[float]]:
        try:
            raw = future.result(timeout=self.timeout)
        except FutureTimeoutError as exc:
            self._abandon(future)
            raise EmbeddingError(
                "Embedding provider timed out",
                retryable=True,
                context={**context, "timeout": self.timeout},
                cause=exc,
            ) from exc
        except EmbeddingError as exc:
            exc.context.update({k: v for k, v in context.items() if k not in exc.context})
            raise
        except Exception as exc:
            raise EmbeddingError(
                f"Embedding provider failed: {exc}", retryable=True, context=context, cause=exc
            ) from exc

        try:
            return decode_embeddings(raw, expected)
        except EmbeddingError as exc:
            exc.context.update({k: v for k, v in context.items() if k not in exc.context})
            raise
