"""Core DocRAG data models."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class Document:
    """A source document and its extracted text."""

    title: str
    text: str
    id: str = field(default_factory=new_id)
    file_type: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(slots=True)
class ChunkRecord:
    """Chunk of document text paired with its embedding and metadata."""

    document_id: str
    index: int
    text: str
    embedding: List[float] | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChunkRef:
    id: str
    document_id: str
    chunk_index: int
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DocumentRef:
    id: str
    title: str
    file_type: str | None = None


@dataclass(slots=True)
class SearchResult:
    """One ranked hit.

    ``similarity`` is the cosine similarity of the chunk to the query;
    ``score`` is the value the list is ranked by (equal to ``similarity`` for
    vector search, the blended score for hybrid search).
    """

    chunk: ChunkRef
    document: DocumentRef
    similarity: float
    score: float
    lexical_score: float | None = None
    source: str = "vector"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchResult":
        return cls(
            chunk=ChunkRef(**data["chunk"]),
            document=DocumentRef(**data["document"]),
            similarity=float(data["similarity"]),
            score=float(data["score"]),
            lexical_score=data.get("lexical_score"),
            source=data.get("source", "vector"),
        )


@dataclass(slots=True)
class SearchOptions:
    limit: int = 10
    threshold: float = 0.7
    document_id: str | None = None
    use_cache: bool = True


@dataclass(slots=True)
class IngestionResult:
    document: Document
    chunk_count: int
    batch_count: int
    cache_invalidated: bool = True


@dataclass(slots=True)
class AnswerSource:
    document_id: str
    document_title: str
    chunk_text: str
    similarity: float


@dataclass(slots=True)
class RagAnswer:
    answer: str
    sources: List[AnswerSource] = field(default_factory=list)
    found_context: bool = True
