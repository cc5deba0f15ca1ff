"""FastAPI application exposing DocRAG over HTTP."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterator, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from docrag import __version__
from docrag.config import AppConfig
from docrag.errors import (
    DocRagError,
    DocumentNotFoundError,
    EmbeddingError,
    GenerationError,
    IngestionError,
    InvalidInputError,
)
from docrag.models import SearchOptions
from docrag.pipeline import RetrievalOrchestrator, build_orchestrator

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="DocRAG API", version=__version__)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class IngestPayload(BaseModel):
    paths: List[str]
    db: str | None = None


class SearchPayload(BaseModel):
    query: str
    db: Path | None = None
    limit: int = 10
    threshold: float = 0.7
    document_id: str | None = None
    hybrid: bool = False
    use_cache: bool = True


class AnswerPayload(BaseModel):
    question: str
    db: Path | None = None
    max_sources: int = Field(default=5, ge=1, le=100)
    threshold: float = 0.7
    document_id: str | None = None
    hybrid: bool = False


def _resolve_db_path(db: Path | str | None) -> Path:
    config = AppConfig.from_env(db_path=db)
    return config.resolve_db_path(Path.cwd())


def status_for(exc: DocRagError) -> int:
    if isinstance(exc, InvalidInputError):
        return 400
    if isinstance(exc, DocumentNotFoundError):
        return 404
    if isinstance(exc, (GenerationError, EmbeddingError)):
        return 502
    if isinstance(exc, IngestionError) and isinstance(exc.cause, EmbeddingError):
        return 502
    return 500


@contextmanager
def _orchestrator(db: Path | str | None = None) -> Iterator[RetrievalOrchestrator]:
    config = AppConfig.from_env(db_path=_resolve_db_path(db))
    orchestrator = build_orchestrator(config)
    try:
        yield orchestrator
    finally:
        orchestrator.close()


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.exception_handler(DocRagError)
async def docrag_error_handler(request: Request, exc: DocRagError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content=jsonable_encoder({"detail": exc.message, "error": exc.to_dict()}),
    )


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}


@app.post("/ingest")
async def ingest_documents(payload: IngestPayload) -> dict[str, Any]:
    paths = [Path(path).expanduser() for path in payload.paths]
    missing = [str(path) for path in paths if not path.exists()]
    if missing:
        raise HTTPException(status_code=404, detail=f"Files not found: {', '.join(missing)}")

    def run() -> dict[str, Any]:
        ingested: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []
        with _orchestrator(payload.db) as orchestrator:
            for path in paths:
                try:
                    result = orchestrator.ingest_path(path)
                except DocRagError as exc:
                    LOGGER.warning("Failed to ingest %s: %s", path, exc)
                    failed.append({"path": str(path), "error": exc.to_dict()})
                    continue
                ingested.append(
                    {
                        "path": str(path),
                        "document_id": result.document.id,
                        "chunk_count": result.chunk_count,
                        "batch_count": result.batch_count,
                        "cache_invalidated": result.cache_invalidated,
                    }
                )
        return {"ingested": ingested, "failed": failed}

    return jsonable_encoder(await asyncio.to_thread(run))


@app.post("/search")
async def search_documents(payload: SearchPayload) -> dict[str, Any]:
    resolved_db = _resolve_db_path(payload.db)
    if not resolved_db.exists():
        raise HTTPException(
            status_code=404,
            detail=f"Database not found at {resolved_db}. Please ingest some documents first.",
        )

    options = SearchOptions(
        limit=payload.limit,
        threshold=payload.threshold,
        document_id=payload.document_id,
        use_cache=payload.use_cache,
    )

    def run() -> List[Dict[str, Any]]:
        with _orchestrator(resolved_db) as orchestrator:
            if payload.hybrid:
                results = orchestrator.hybrid_search(payload.query, options)
            else:
                results = orchestrator.search(payload.query, options)
        return [result.to_dict() for result in results]

    return {"results": await asyncio.to_thread(run)}


@app.post("/answer")
async def answer_question(payload: AnswerPayload) -> dict[str, Any]:
    def run() -> Dict[str, Any]:
        with _orchestrator(payload.db) as orchestrator:
            answer = orchestrator.answer(
                payload.question,
                max_sources=payload.max_sources,
                document_id=payload.document_id,
                threshold=payload.threshold,
                hybrid=payload.hybrid,
            )
        return asdict(answer)

    return await asyncio.to_thread(run)


@app.get("/documents")
async def list_documents(db: Path | None = None) -> dict[str, Any]:
    """List all ingested documents in the database."""
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        return {"documents": [], "stats": {"document_count": 0, "chunk_count": 0, "embedded_chunk_count": 0}}

    def run() -> dict[str, Any]:
        with _orchestrator(resolved_db) as orchestrator:
            return {"documents": orchestrator.list_documents(), "stats": orchestrator.get_stats()}

    return await asyncio.to_thread(run)


@app.get("/documents/{document_id}")
async def get_document(document_id: str, db: Path | None = None) -> dict[str, Any]:
    def run() -> Dict[str, Any]:
        with _orchestrator(db) as orchestrator:
            return asdict(orchestrator.get_document(document_id))

    return await asyncio.to_thread(run)


@app.delete("/documents/{document_id}")
async def delete_document_by_id(document_id: str, db: Path | None = None) -> dict[str, Any]:
    """Delete a document and its chunks."""
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        raise HTTPException(status_code=404, detail="Database not found")

    def run() -> bool:
        with _orchestrator(resolved_db) as orchestrator:
            return orchestrator.delete_document(document_id)

    if not await asyncio.to_thread(run):
        raise DocumentNotFoundError(document_id)

    return {"status": "ok", "deleted_id": document_id}
