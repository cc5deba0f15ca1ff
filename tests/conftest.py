"""Shared fixtures and in-memory collaborators."""

from __future__ import annotations

import hashlib
import string
import threading
from pathlib import Path
from typing import Callable, List, Sequence

import pytest

from docrag.cache import MemoryCacheTransport, ResultCache
from docrag.config import AppConfig
from docrag.index.storage import SQLiteVectorStore
from docrag.pipeline import RetrievalOrchestrator

DIMENSION = 8


def fake_vector(text: str) -> List[float]:
    """Deterministic pseudo-embedding derived from the text hash."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [byte / 255.0 - 0.5 for byte in digest[:DIMENSION]]


def boundaryless_text(length: int) -> str:
    """Text without periods or newlines whose windows all differ."""
    letters = string.ascii_lowercase
    return "".join(letters[i % len(letters)] for i in range(length))


class FakeEmbedder:
    """Embedder that records calls and can fail a number of leading calls."""

    def __init__(
        self,
        *,
        failures: int = 0,
        error_factory: Callable[[], Exception] | None = None,
        on_call: Callable[[List[str]], None] | None = None,
    ) -> None:
        self.calls: List[List[str]] = []
        self.failures = failures
        self.error_factory = error_factory or (lambda: ConnectionError("provider down"))
        self.on_call = on_call
        self._lock = threading.Lock()

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        with self._lock:
            self.calls.append(list(texts))
            fail = self.failures > 0
            if fail:
                self.failures -= 1
        if self.on_call is not None:
            self.on_call(list(texts))
        if fail:
            raise self.error_factory()
        return [fake_vector(text) for text in texts]


class FakeGenerator:
    def __init__(self, reply: str = "Generated answer", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list = []

    def complete(self, messages, system_prompt=None) -> str:
        self.calls.append((list(messages), system_prompt))
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def store(tmp_path: Path):
    store = SQLiteVectorStore(tmp_path / "test.db", dimension=DIMENSION)
    yield store
    store.close()


@pytest.fixture
def cache() -> ResultCache:
    return ResultCache(MemoryCacheTransport())


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        db_path=tmp_path / "test.db",
        batch_size=2,
        embedding_timeout=5.0,
        retry_wait=0.0,
        similarity_threshold=0.0,
        cache_backend="memory",
    )


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def orchestrator(embedder, store, cache, config):
    orchestrator = RetrievalOrchestrator(
        embedder, store, cache=cache, generator=FakeGenerator(), config=config
    )
    yield orchestrator
    orchestrator.processor.close()
