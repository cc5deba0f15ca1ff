"""SQLite vector store with an FTS5 lexical index."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence

import numpy as np

from docrag.errors import StoreError
from docrag.models import ChunkRecord, ChunkRef, Document, DocumentRef, SearchResult, new_id

LOGGER = logging.getLogger(__name__)

VECTOR_WEIGHT = 0.7
LEXICAL_WEIGHT = 0.3
SIMILARITY_EPSILON = 1e-9

# Close to the PostgreSQL english stop list; such terms never reach the index query.
STOP_WORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because been
    before being below between both but by can did do does doing down during each
    few for from further had has have having he her here hers herself him himself
    his how i if in into is it its itself just me more most my myself no nor not
    now of off on once only or other our ours ourselves out over own same she
    should so some such than that the their theirs them themselves then there
    these they this those through to too under until up very was we were what
    when where which while who whom why will with you your yours yourself
    yourselves
    """.split()
)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def build_match_query(text: str) -> str | None:
    """Turn free text into an FTS5 query requiring every meaningful term.

    Returns ``None`` when nothing indexable is left, in which case no row can
    match.
    """
    terms: List[str] = []
    for token in _TOKEN_RE.findall(text.lower()):
        if token in STOP_WORDS or token in terms:
            continue
        terms.append(token)
    if not terms:
        return None
    return " AND ".join(f'"{term}"' for term in terms)


def lexical_score(bm25_rank: float) -> float:
    """Map an FTS5 ``bm25()`` value (more negative is better) onto ``[0, 1)``."""
    relevance = max(-float(bm25_rank), 0.0)
    return relevance / (1.0 + relevance)


def cosine_similarity(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row of ``matrix`` with ``query``; zero vectors score 0.

    Rows and query are scaled to unit length before the dot product, and
    values within ``SIMILARITY_EPSILON`` of +/-1 are snapped, so an exact
    match scores exactly 1.0.
    """
    row_norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0])
    with np.errstate(divide="ignore", invalid="ignore"):
        unit_rows = np.where(row_norms > 0, matrix / row_norms, 0.0)
    scores = np.clip(unit_rows @ (query / query_norm), -1.0, 1.0)
    scores[np.abs(scores - 1.0) <= SIMILARITY_EPSILON] = 1.0
    scores[np.abs(scores + 1.0) <= SIMILARITY_EPSILON] = -1.0
    return scores


def _to_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype="float32").tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="float32")


def _loads(value: str | None) -> Dict[str, Any]:
    return json.loads(value) if value else {}


class SQLiteVectorStore:
    """Persistence layer for documents, chunks and their embeddings.

    Chunk rows are keyed by ``(document_id, chunk_index)``; writing the same
    key again overwrites text, embedding and metadata in place. Each call to
    :meth:`upsert_chunks` is one transaction.
    """

    def __init__(self, db_path: Path | str, *, dimension: int, timeout: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self.dimension = dimension
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(str(self.db_path), timeout=timeout, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreError(
                "Unable to open the vector store", context={"db_path": str(db_path)}, cause=exc
            ) from exc
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._ensure_schema()
        self._check_dimension()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    text TEXT NOT NULL,
                    file_type TEXT,
                    metadata TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS documents_updated
                AFTER UPDATE ON documents
                BEGIN
                    UPDATE documents SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
                END;
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    metadata TEXT,
                    embedding BLOB,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(document_id, chunk_index),
                    FOREIGN KEY(document_id) REFERENCES documents(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_chunks_document_id
                    ON chunks(document_id)
                """
            )
            conn.execute(
                """
                CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
                    text,
                    content='chunks',
                    content_rowid='rowid',
                    tokenize='porter unicode61'
                )
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS chunks_fts_insert AFTER INSERT ON chunks
                BEGIN
                    INSERT INTO chunks_fts(rowid, text) VALUES (NEW.rowid, NEW.text);
                END;
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS chunks_fts_delete AFTER DELETE ON chunks
                BEGIN
                    INSERT INTO chunks_fts(chunks_fts, rowid, text)
                    VALUES ('delete', OLD.rowid, OLD.text);
                END;
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS chunks_fts_update AFTER UPDATE OF text ON chunks
                BEGIN
                    INSERT INTO chunks_fts(chunks_fts, rowid, text)
                    VALUES ('delete', OLD.rowid, OLD.text);
                    INSERT INTO chunks_fts(rowid, text) VALUES (NEW.rowid, NEW.text);
                END;
                """
            )

    def _check_dimension(self) -> None:
        with self.transaction() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = 'dimension'").fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO meta(key, value) VALUES ('dimension', ?)", (str(self.dimension),)
                )
                return
        stored = int(row["value"])
        if stored != self.dimension:
            raise StoreError(
                "Embedding dimension does not match the store",
                context={"store_dimension": stored, "embedder_dimension": self.dimension},
            )

    # -- documents ------------------------------------------------------------

    def upsert_document(self, document: Document) -> Document:
        """Insert or replace a document row, returning it with timestamps."""
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO documents(id, title, text, file_type, metadata)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        text = excluded.text,
                        file_type = excluded.file_type,
                        metadata = excluded.metadata
                    """,
                    (
                        document.id,
                        document.title,
                        document.text,
                        document.file_type,
                        json.dumps(document.metadata, ensure_ascii=True),
                    ),
                )
        except sqlite3.Error as exc:
            raise StoreError(
                "Failed to save document", context={"document_id": document.id}, cause=exc
            ) from exc
        stored = self.get_document(document.id)
        if stored is None:
            raise StoreError("Document vanished after save", context={"document_id": document.id})
        return stored

    def get_document(self, document_id: str) -> Document | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        if row is None:
            return None
        return Document(
            id=row["id"],
            title=row["title"],
            text=row["text"],
            file_type=row["file_type"],
            metadata=_loads(row["metadata"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def update_metadata(self, document_id: str, metadata: Dict[str, Any]) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE documents SET metadata = ? WHERE id = ?",
                (json.dumps(metadata, ensure_ascii=True), document_id),
            )
        return cursor.rowcount > 0

    def list_documents(self) -> List[Dict[str, Any]]:
        """List documents with their chunk counts, newest first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT
                    d.id AS id,
                    d.title AS title,
                    d.file_type AS file_type,
                    d.metadata AS metadata,
                    d.created_at AS created_at,
                    d.updated_at AS updated_at,
                    COUNT(c.id) AS chunk_count
                FROM documents d
                LEFT JOIN chunks c ON c.document_id = d.id
                GROUP BY d.id
                ORDER BY d.created_at DESC, d.id
                """
            ).fetchall()
        return [
            {
                "id": row["id"],
                "title": row["title"],
                "file_type": row["file_type"],
                "metadata": _loads(row["metadata"]),
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
                "chunk_count": row["chunk_count"],
            }
            for row in rows
        ]

    def delete_document(self, document_id: str) -> bool:
        """Delete a document; its chunks go with it."""
        try:
            with self.transaction() as conn:
                cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        except sqlite3.Error as exc:
            raise StoreError(
                "Failed to delete document", context={"document_id": document_id}, cause=exc
            ) from exc
        return cursor.rowcount > 0

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            documents = self._conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
            chunks = self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            embedded = self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE embedding IS NOT NULL"
            ).fetchone()[0]
        return {
            "document_count": documents,
            "chunk_count": chunks,
            "embedded_chunk_count": embedded,
        }

    # -- chunks ---------------------------------------------------------------

    def count_chunks(self, document_id: str | None = None) -> int:
        with self._lock:
            if document_id is None:
                return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            return self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
            ).fetchone()[0]

    def upsert_chunks(
        self,
        document_id: str,
        chunks: Sequence[ChunkRecord],
        *,
        batch_index: int | None = None,
    ) -> None:
        """Write one batch of chunks atomically.

        On any failure nothing from the batch is persisted and a
        :class:`StoreError` identifying the batch is raised.
        """
        context = {"document_id": document_id, "batch_index": batch_index}
        for chunk in chunks:
            if chunk.document_id != document_id:
                raise StoreError(
                    "Chunk belongs to another document",
                    context={**context, "chunk_document_id": chunk.document_id},
                )
            if chunk.embedding is not None and len(chunk.embedding) != self.dimension:
                raise StoreError(
                    "Embedding dimension does not match the store",
                    context={
                        **context,
                        "chunk_index": chunk.index,
                        "expected": self.dimension,
                        "received": len(chunk.embedding),
                    },
                )

        try:
            with self.transaction() as conn:
                for chunk in chunks:
                    conn.execute(
                        """
                        INSERT INTO chunks(id, document_id, chunk_index, text, metadata, embedding)
                        VALUES (?, ?, ?, ?, ?, ?)
                        ON CONFLICT(document_id, chunk_index) DO UPDATE SET
                            text = excluded.text,
                            metadata = excluded.metadata,
                            embedding = excluded.embedding
                        """,
                        (
                            new_id(),
                            document_id,
                            chunk.index,
                            chunk.text,
                            json.dumps(chunk.metadata, ensure_ascii=True),
                            None if chunk.embedding is None else sqlite3.Binary(_to_blob(chunk.embedding)),
                        ),
                    )
        except sqlite3.Error as exc:
            LOGGER.error("Failed to write chunk batch %s of %s: %s", batch_index, document_id, exc)
            raise StoreError("Failed to write chunk batch", context=context, cause=exc) from exc

    def delete_chunks_from(self, document_id: str, first_index: int) -> int:
        """Remove chunks at ``first_index`` and beyond, left over from a longer version."""
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    "DELETE FROM chunks WHERE document_id = ? AND chunk_index >= ?",
                    (document_id, first_index),
                )
        except sqlite3.Error as exc:
            raise StoreError(
                "Failed to remove stale chunks", context={"document_id": document_id}, cause=exc
            ) from exc
        return cursor.rowcount

    # -- queries --------------------------------------------------------------

    def similarity_search(
        self,
        query_embedding: Sequence[float] | np.ndarray,
        limit: int,
        threshold: float,
        document_id: str | None = None,
    ) -> List[SearchResult]:
        """Rank embedded chunks by cosine similarity to the query."""
        sql = """
            SELECT
                c.id AS id,
                c.document_id AS document_id,
                c.chunk_index AS chunk_index,
                c.text AS text,
                c.metadata AS metadata,
                c.embedding AS embedding,
                d.title AS title,
                d.file_type AS file_type
            FROM chunks c
            JOIN documents d ON d.id = c.document_id
            WHERE c.embedding IS NOT NULL
        """
        params: List[Any] = []
        if document_id is not None:
            sql += " AND c.document_id = ?"
            params.append(document_id)

        rows = self._query("similarity_search", sql, params)
        if not rows:
            return []

        scores = self._score(rows, query_embedding)
        order = np.argsort(-scores, kind="stable")
        results: List[SearchResult] = []
        for idx in order:
            score = float(scores[idx])
            if score < threshold:
                break
            results.append(self._to_result(rows[idx], similarity=score, score=score))
            if len(results) >= limit:
                break
        return results

    def hybrid_search(
        self,
        query_embedding: Sequence[float] | np.ndarray,
        query_text: str,
        limit: int,
        threshold: float,
        document_id: str | None = None,
    ) -> List[SearchResult]:
        """Blend vector similarity with lexical rank over lexically matching chunks.

        Rows without a lexical match are never returned, however similar
        their embeddings are. ``threshold`` applies to the vector component.
        """
        match = build_match_query(query_text)
        if match is None:
            LOGGER.debug("Hybrid query %r has no indexable terms", query_text)
            return []

        sql = """
            SELECT
                c.id AS id,
                c.document_id AS document_id,
                c.chunk_index AS chunk_index,
                c.text AS text,
                c.metadata AS metadata,
                c.embedding AS embedding,
                d.title AS title,
                d.file_type AS file_type,
                bm25(chunks_fts) AS text_rank
            FROM chunks_fts
            JOIN chunks c ON c.rowid = chunks_fts.rowid
            JOIN documents d ON d.id = c.document_id
            WHERE chunks_fts MATCH ?
            AND c.embedding IS NOT NULL
        """
        params: List[Any] = [match]
        if document_id is not None:
            sql += " AND c.document_id = ?"
            params.append(document_id)

        rows = self._query("hybrid_search", sql, params)
        if not rows:
            return []

        similarities = self._score(rows, query_embedding)
        candidates: List[SearchResult] = []
        for row, similarity in zip(rows, similarities):
            similarity = float(similarity)
            if similarity < threshold:
                continue
            lexical = lexical_score(row["text_rank"])
            combined = VECTOR_WEIGHT * similarity + LEXICAL_WEIGHT * lexical
            candidates.append(
                self._to_result(
                    row,
                    similarity=similarity,
                    score=combined,
                    lexical=lexical,
                    source="hybrid",
                )
            )
        candidates.sort(key=lambda result: result.score, reverse=True)
        return candidates[:limit]

    def _query(self, operation: str, sql: str, params: Sequence[Any]) -> List[sqlite3.Row]:
        try:
            with self._lock:
                return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(
                f"{operation} query failed", context={"operation": operation}, cause=exc
            ) from exc

    def _score(self, rows: Sequence[sqlite3.Row], query_embedding: Sequence[float] | np.ndarray) -> np.ndarray:
        query = np.asarray(query_embedding, dtype="float32").astype("float64")
        if query.shape != (self.dimension,):
            raise StoreError(
                "Query embedding dimension does not match the store",
                context={"expected": self.dimension, "received": int(query.size)},
            )
        matrix = np.vstack([_from_blob(row["embedding"]) for row in rows]).astype("float64")
        return cosine_similarity(matrix, query)

    @staticmethod
    def _to_result(
        row: sqlite3.Row,
        *,
        similarity: float,
        score: float,
        lexical: float | None = None,
        source: str = "vector",
    ) -> SearchResult:
        return SearchResult(
            chunk=ChunkRef(
                id=row["id"],
                document_id=row["document_id"],
                chunk_index=row["chunk_index"],
                text=row["text"],
                metadata=_loads(row["metadata"]),
            ),
            document=DocumentRef(id=row["document_id"], title=row["title"], file_type=row["file_type"]),
            similarity=similarity,
            score=score,
            lexical_score=lexical,
            source=source,
        )
