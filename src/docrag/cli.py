"""Command line interface for DocRAG."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from docrag.config import AppConfig
from docrag.errors import DocRagError
from docrag.models import SearchOptions
from docrag.pipeline import build_orchestrator
from docrag.utils.files import iter_document_paths
from docrag.web.app import app as web_app


console = Console()
app = typer.Typer(help="DocRAG - document ingestion and retrieval-augmented answers")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _config(db: Optional[Path], **overrides) -> AppConfig:
    config = AppConfig.from_env(db_path=db, **overrides)
    config.db_path = config.resolve_db_path(Path.cwd())
    return config


def _fail(exc: DocRagError) -> None:
    console.print(f"[red]{exc.kind}:[/red] {exc}")
    raise typer.Exit(code=1)


@app.command()
def ingest(
    inputs: List[Path] = typer.Argument(
        ..., help="Files or directories with PDF, Markdown or text files.", resolve_path=True
    ),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, help="Sentence-transformer model name"),
    chunk_chars: int = typer.Option(AppConfig().chunk_chars, help="Chunk size in characters"),
    overlap: int = typer.Option(AppConfig().overlap, help="Chunk overlap"),
    batch_size: int = typer.Option(AppConfig().batch_size, help="Chunks per embedding batch"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Ingest one or more documents."""
    _setup_logging(verbose)
    config = _config(
        db, model_name=model, chunk_chars=chunk_chars, overlap=overlap, batch_size=batch_size
    )
    _ensure_db_parent(config.db_path)

    paths = list(iter_document_paths(inputs))
    if not paths:
        console.print("[yellow]No supported documents found.[/yellow]")
        return

    try:
        orchestrator = build_orchestrator(config)
    except DocRagError as exc:
        _fail(exc)

    console.print(f"Ingesting into [bold]{config.db_path}[/bold]...")
    failed = 0
    try:
        for path in paths:
            try:
                result = orchestrator.ingest_path(path)
            except DocRagError as exc:
                failed += 1
                console.print(f"[red]Failed[/red] {path.name}: {exc}")
                continue
            console.print(
                f"[green]Ingested[/green] {path.name}: {result.chunk_count} chunks "
                f"in {result.batch_count} batches (id {result.document.id})"
            )
    finally:
        orchestrator.close()

    console.print(f"Ingested: {len(paths) - failed}, failed: {failed}")
    if failed:
        raise typer.Exit(code=1)


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    limit: int = typer.Option(AppConfig().search_limit, help="Number of results to display"),
    threshold: float = typer.Option(AppConfig().similarity_threshold, help="Minimum similarity"),
    document: Optional[str] = typer.Option(None, "--document", help="Restrict to one document id"),
    hybrid: bool = typer.Option(False, "--hybrid", help="Blend vector and keyword ranking"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Execute a semantic or hybrid search."""
    _setup_logging(verbose)
    config = _config(db)
    if not config.db_path.exists():
        raise typer.BadParameter(f"Database not found: {config.db_path}")

    options = SearchOptions(limit=limit, threshold=threshold, document_id=document)
    orchestrator = build_orchestrator(config)
    try:
        if hybrid:
            results = orchestrator.hybrid_search(query, options)
        else:
            results = orchestrator.search(query, options)
    except DocRagError as exc:
        _fail(exc)
    finally:
        orchestrator.close()

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Similarity")
    table.add_column("Document")
    table.add_column("Chunk")
    table.add_column("Snippet")

    for result in results:
        snippet = result.chunk.text.replace("\n", " ")
        table.add_row(
            f"{result.score:.4f}",
            f"{result.similarity:.4f}",
            result.document.title,
            str(result.chunk.chunk_index),
            snippet[:180],
        )

    console.print(table)


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to answer from the indexed documents"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    max_sources: int = typer.Option(AppConfig().max_sources, help="Chunks used as context"),
    threshold: float = typer.Option(AppConfig().similarity_threshold, help="Minimum similarity"),
    document: Optional[str] = typer.Option(None, "--document", help="Restrict to one document id"),
    hybrid: bool = typer.Option(False, "--hybrid", help="Retrieve context with hybrid search"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Answer a question using retrieved context."""
    _setup_logging(verbose)
    config = _config(db)
    orchestrator = build_orchestrator(config)
    try:
        answer = orchestrator.answer(
            question,
            max_sources=max_sources,
            document_id=document,
            threshold=threshold,
            hybrid=hybrid,
        )
    except DocRagError as exc:
        _fail(exc)
    finally:
        orchestrator.close()

    console.print(answer.answer)
    if answer.sources:
        console.print("\n[bold]Sources[/bold]")
        for source in answer.sources:
            console.print(f"- {source.document_title} ({source.similarity:.3f}): {source.chunk_text}")


@app.command()
def documents(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """List ingested documents."""
    config = _config(db)
    if not config.db_path.exists():
        console.print("[yellow]Database not found.[/yellow]")
        return

    orchestrator = build_orchestrator(config)
    try:
        rows = orchestrator.list_documents()
    finally:
        orchestrator.close()

    if not rows:
        console.print("[yellow]No documents ingested yet.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Type")
    table.add_column("Chunks")
    for row in rows:
        table.add_row(row["id"], row["title"], row.get("file_type") or "", str(row["chunk_count"]))
    console.print(table)


@app.command()
def delete(
    document_id: str = typer.Argument(..., help="Document id to delete"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Delete a document and its chunks."""
    config = _config(db)
    if not config.db_path.exists():
        console.print("[yellow]Database not found, nothing to delete.[/yellow]")
        return

    orchestrator = build_orchestrator(config)
    try:
        deleted = orchestrator.delete_document(document_id)
    finally:
        orchestrator.close()

    if not deleted:
        console.print(f"[yellow]Document {document_id} not found.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"Deleted document {document_id}.")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Start the HTTP API."""
    import uvicorn

    config = _config(db)
    if not config.db_path.exists():
        console.print("[yellow]Warning: database not found, searches might fail.[/yellow]")

    os.environ["DOCRAG_DB_PATH"] = str(config.db_path)
    console.print(f"Starting web API on http://{host}:{port} (database: {config.db_path})")
    uvicorn.run(
        web_app,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )
