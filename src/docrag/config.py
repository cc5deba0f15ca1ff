"""Application configuration defaults."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

from docrag.embedding.encoder import DEFAULT_MODEL
from docrag.errors import InvalidInputError

ENV_PREFIX = "DOCRAG_"
CACHE_BACKENDS = ("sqlite", "memory", "none")


def _get_default_db_path() -> Path:
    """Get the default database path based on platform and execution context."""
    user_db = Path.home() / "Documents" / "DocRAG" / "docrag.db"

    # PyInstaller bundle
    if getattr(sys, "frozen", False):
        return user_db

    # When running from source, prefer local data/ if it exists
    local_db = Path("data/docrag.db")
    if local_db.exists():
        return local_db

    return user_db


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class AppConfig:
    db_path: Path | None = None
    model_name: str = DEFAULT_MODEL
    chunk_chars: int = 1000
    overlap: int = 200
    batch_size: int = 10
    embedding_workers: int = 1
    embedding_timeout: float = 30.0
    embedding_retries: int = 3
    retry_wait: float = 1.0
    embedding_api_url: str | None = None
    embedding_api_key: str | None = None
    embedding_dimension: int = 1024
    search_limit: int = 10
    similarity_threshold: float = 0.7
    cache_backend: str = "sqlite"
    cache_ttl: int = 3600
    max_sources: int = 5
    llm_base_url: str | None = None
    llm_model: str | None = None
    llm_api_key: str | None = None
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        else:
            self.db_path = Path(self.db_path)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> "AppConfig":
        """Build a config from ``DOCRAG_*`` variables; keyword overrides win."""
        env = os.environ if environ is None else environ
        fields: dict[str, Callable[[str], object]] = {
            "db_path": Path,
            "model_name": str,
            "chunk_chars": int,
            "overlap": int,
            "batch_size": int,
            "embedding_workers": int,
            "embedding_timeout": float,
            "embedding_retries": int,
            "retry_wait": float,
            "embedding_api_url": str,
            "embedding_api_key": str,
            "embedding_dimension": int,
            "search_limit": int,
            "similarity_threshold": float,
            "cache_backend": str,
            "cache_ttl": int,
            "max_sources": int,
            "llm_base_url": str,
            "llm_model": str,
            "llm_api_key": str,
            "verbose": _as_bool,
        }
        values: dict[str, object] = {}
        for name, convert in fields.items():
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            try:
                values[name] = convert(raw)
            except ValueError as exc:
                raise InvalidInputError(
                    f"Invalid value for {ENV_PREFIX}{name.upper()}", field=name, value=raw, cause=exc
                ) from exc
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def validate(self) -> "AppConfig":
        if self.chunk_chars < 1:
            raise InvalidInputError("Chunk size must be positive", field="chunk_chars", value=self.chunk_chars)
        if self.overlap < 0 or self.overlap >= self.chunk_chars:
            raise InvalidInputError(
                "Chunk overlap must be non-negative and smaller than the chunk size",
                field="overlap",
                value=self.overlap,
            )
        if self.batch_size < 1:
            raise InvalidInputError("Batch size must be at least 1", field="batch_size", value=self.batch_size)
        if self.embedding_workers < 1:
            raise InvalidInputError(
                "Embedding workers must be at least 1", field="embedding_workers", value=self.embedding_workers
            )
        if self.embedding_retries < 1:
            raise InvalidInputError(
                "Embedding retries must be at least 1", field="embedding_retries", value=self.embedding_retries
            )
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise InvalidInputError(
                "Similarity threshold must be between 0 and 1",
                field="similarity_threshold",
                value=self.similarity_threshold,
            )
        if self.cache_backend not in CACHE_BACKENDS:
            raise InvalidInputError(
                f"Cache backend must be one of {', '.join(CACHE_BACKENDS)}",
                field="cache_backend",
                value=self.cache_backend,
            )
        return self

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path
