"""
Command-line interface for contentrag.

Commands:
    serve     - Start the FastAPI server
    ingest    - Chunk, embed and store a text/markdown file
    search    - Retrieve the chunks most similar to a query
    documents - List stored documents
    delete    - Delete a document
    reprocess - Re-chunk and re-embed a stored document
    stats     - Show store statistics
"""

import asyncio
from pathlib import Path
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from contentrag.errors import ContentRAGError

app = typer.Typer(
    name="contentrag",
    help="Retrieval-augmented knowledge base for content briefs",
    add_completion=False,
)
console = Console()


def _service():
    from contentrag.config import settings
    from contentrag.log import configure_logging
    from contentrag.retrieval.resources import get_rag_service

    configure_logging(settings.log_level)
    return get_rag_service()


def _fail(error: ContentRAGError) -> NoReturn:
    hint = " (retryable)" if error.retryable else ""
    console.print(f"[red]{error.code}: {error}{hint}[/red]")
    raise typer.Exit(1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Host to bind (default API_HOST)"),
    port: Optional[int] = typer.Option(None, help="Port to bind (default API_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Start the FastAPI server."""
    import uvicorn

    from contentrag.config import settings

    host = host or settings.api_host
    port = port or settings.api_port
    console.print(f"[green]Starting contentrag server on {host}:{port}[/green]")

    uvicorn.run(
        "contentrag.api.main:app",
        host=host,
        port=port,
        reload=reload,
        workers=1,  # The store lives in process memory
    )


@app.command()
def ingest(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text or markdown file"),
    doc_id: Optional[str] = typer.Option(None, "--doc-id", help="Document id (default: file stem)"),
    title: Optional[str] = typer.Option(None, help="Display title (default: file name)"),
    url: Optional[str] = typer.Option(None, help="Source URL"),
    author: Optional[str] = typer.Option(None, help="Document author"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", help="Tag (repeatable)"),
) -> None:
    """Chunk, embed and store a document file."""
    try:
        raw_text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        console.print(f"[red]{path} is not UTF-8 text: {e.reason} at byte {e.start}[/red]")
        raise typer.Exit(1) from e

    service = _service()
    doc_id = doc_id or path.stem

    try:
        with console.status(f"[bold green]Ingesting {path.name}..."):
            result = asyncio.run(
                service.ingest(doc_id, title or path.name, url, raw_text, author=author, tags=tags)
            )
    except ContentRAGError as e:
        _fail(e)

    console.print(
        f"[green]✓ {result.doc_id}: {result.chunks_stored} chunks stored "
        f"(generation {result.generation}, {len(raw_text):,} chars)[/green]"
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    top_k: int = typer.Option(5, "--top-k", "-k", min=1, help="Number of results"),
    min_score: Optional[float] = typer.Option(None, help="Minimum similarity"),
    author: Optional[str] = typer.Option(None, help="Only documents whose author contains this"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", help="Only documents with this tag (repeatable)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show full chunk text"),
) -> None:
    """Retrieve the chunks most similar to a query."""
    service = _service()

    try:
        with console.status("[bold green]Searching..."):
            results = asyncio.run(
                service.retrieve(query, top_k=top_k, min_score=min_score, author=author, tags=tags)
            )
    except ContentRAGError as e:
        _fail(e)

    if not results:
        console.print("[yellow]No results.[/yellow]")
        return

    table = Table(title=f"Results for: {query}")
    table.add_column("#", style="dim")
    table.add_column("Score", style="green")
    table.add_column("Document", style="cyan")
    table.add_column("Chunk", style="cyan")
    table.add_column("Content")

    for position, result in enumerate(results, 1):
        content = result.content if verbose else _preview(result.content)
        table.add_row(
            str(position),
            f"{result.score:.4f}",
            result.title or result.doc_id,
            str(result.chunk_index),
            content,
        )
    console.print(table)


@app.command()
def documents(
    limit: int = typer.Option(20, min=1, help="Maximum documents to list"),
    offset: int = typer.Option(0, min=0, help="Documents to skip"),
    author: Optional[str] = typer.Option(None, help="Only documents whose author contains this"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", help="Only documents with this tag (repeatable)"),
) -> None:
    """List stored documents."""
    service = _service()
    records = service.list_documents(limit=limit, offset=offset, author=author, tags=tags)

    if not records:
        console.print("[yellow]No documents stored.[/yellow]")
        return

    table = Table(title="Documents")
    table.add_column("doc_id", style="cyan")
    table.add_column("Title")
    table.add_column("Tags", style="magenta")
    table.add_column("Chunks", style="green")
    table.add_column("Generation", style="dim")
    table.add_column("Updated", style="dim")

    for record in records:
        table.add_row(
            record.doc_id,
            record.title or "",
            ", ".join(record.tags),
            str(record.chunk_count),
            str(record.generation),
            record.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def delete(doc_id: str = typer.Argument(..., help="Document to delete")) -> None:
    """Delete a document and its chunks."""
    service = _service()
    if not asyncio.run(service.delete_document(doc_id)):
        console.print(f"[red]Document not found: {doc_id}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Deleted {doc_id}[/green]")


@app.command()
def reprocess(doc_id: str = typer.Argument(..., help="Document to re-chunk and re-embed")) -> None:
    """Re-chunk and re-embed a stored document with current settings."""
    service = _service()

    try:
        with console.status(f"[bold green]Reprocessing {doc_id}..."):
            result = asyncio.run(service.reprocess(doc_id))
    except ContentRAGError as e:
        _fail(e)

    console.print(
        f"[green]✓ {result.doc_id}: {result.chunks_stored} chunks "
        f"(generation {result.generation})[/green]"
    )


@app.command()
def stats() -> None:
    """Show store statistics."""
    service = _service()
    store_stats = service.stats()

    table = Table(title="Store")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Documents", str(store_stats.documents))
    table.add_row("Chunks", str(store_stats.chunks))
    table.add_row("Dimension", str(store_stats.dimension or "-"))
    table.add_row("Characters", f"{store_stats.characters:,}")
    table.add_row("Version", str(store_stats.version))
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from contentrag import __version__

    console.print(f"contentrag v{__version__}")


def _preview(text: str, limit: int = 120) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."


if __name__ == "__main__":
    app()
