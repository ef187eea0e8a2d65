"""
CLI Main - Typer command-line interface.
========================================

Commands:
- info: Show configuration and bound models
- repo-create / repo-list / repo-deactivate: Repository administration
- ingest: Index a file or inline text
- search: Query a repository
- status: Repository or document status
- list: Page through a repository's documents
- delete: Remove a document
- reconcile: Resume documents stuck mid-pipeline
"""

import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from docvector.shared.errors import DocVectorError
from docvector.shared.logging import get_logger
from docvector.shared.utils import truncate_text

logger = get_logger(__name__)

app = typer.Typer(
    name="docvector",
    help="""Document-to-vector indexing service.

Turns documents into embeddings with a configurable model backend, stores
them in a vector index (Chroma, Qdrant or in-memory) and tracks every
document's indexing state in a SQL metadata store.

QUICK START:

  docvector repo-create docs -m all-minilm-l12-v2
  docvector ingest docs notes.txt --meta source=notes
  docvector search docs "quick fox" -k 5

Use 'docvector <command> --help' for detailed command options.
""",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _coerce(value: str) -> Any:
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def parse_pairs(pairs: Optional[list[str]]) -> dict[str, Any]:
    """
    Parse repeated key=value options into a mapping.

    Values that look like booleans or numbers are converted; a key given
    more than once collects its values into a list.
    """
    parsed: dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise typer.BadParameter(f"Expected key=value, got '{pair}'")
        key, raw = pair.split("=", 1)
        key = key.strip()
        if not key:
            raise typer.BadParameter(f"Empty key in '{pair}'")
        value = _coerce(raw.strip())
        if key in parsed:
            existing = parsed[key]
            parsed[key] = (existing if isinstance(existing, list) else [existing]) + [value]
        else:
            parsed[key] = value
    return parsed


def _load_settings(ctx: typer.Context):
    from docvector.shared.config import get_settings, load_settings
    from docvector.shared.logging import setup_logging_from_settings

    config_path = ctx.obj.get("config") if ctx.obj else None
    settings = load_settings(config_path) if config_path else get_settings()
    if ctx.obj and ctx.obj.get("verbose"):
        settings.log_level = "DEBUG"
    setup_logging_from_settings(settings)
    return settings


def _open_service(ctx: typer.Context):
    from docvector.service import IndexService

    return IndexService.from_settings(_load_settings(ctx))


def _fail(error: Exception) -> None:
    console.print(f"[red]✗ {type(error).__name__}: {error}[/red]")
    raise typer.Exit(1)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Settings YAML file (default: config/settings.yaml).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable debug logging.",
    ),
):
    """Document-to-vector indexing service."""
    ctx.obj = {"config": config, "verbose": verbose}


# ─────────────────────────────────────────────────────────────────────────────
# Info Command
# ─────────────────────────────────────────────────────────────────────────────


@app.command()
def info(ctx: typer.Context):
    """
    ℹ️ Show configuration and available models.
    """
    from docvector import __version__

    settings = _load_settings(ctx)

    console.print(Panel(
        f"[bold]docvector[/bold]\n"
        f"Version: {__version__}\n"
        f"Index store: {settings.get_effective_index_store()}\n"
        f"Metadata DB: {settings.get_effective_db_url()}",
        title="ℹ️ Info",
    ))

    console.print("\n[bold]Available Models:[/bold]")
    table = Table()
    table.add_column("Model")
    table.add_column("Device")
    table.add_column("Dims")
    table.add_column("Batch")
    table.add_column("In-flight")
    table.add_column("Req/s")

    for binding in settings.available_models:
        table.add_row(
            binding.model,
            binding.device,
            str(binding.dimensions or "auto"),
            str(binding.max_batch_size),
            str(binding.effective_max_in_flight() or "-"),
            str(binding.effective_requests_per_second() or "-"),
        )
    console.print(table)

    reconciliation = settings.reconciliation
    console.print(
        f"\n[dim]Reconciliation: {'on' if reconciliation.enabled else 'off'} "
        f"(interval={reconciliation.interval_seconds}s, "
        f"stale_after={reconciliation.stale_after_seconds}s)[/dim]"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Repository Commands
# ─────────────────────────────────────────────────────────────────────────────


@app.command("repo-create")
def repo_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Repository name."),
    model: str = typer.Option(..., "--model", "-m", help="Model id from available_models."),
    metric: str = typer.Option("cosine", "--metric", help="cosine, dot or euclidean."),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", help="Characters per chunk."),
    chunk_overlap: Optional[int] = typer.Option(
        None, "--chunk-overlap", help="Overlap between chunks."
    ),
):
    """
    📁 Create a repository bound to a model.
    """
    from docvector.shared.schemas import DistanceMetric

    try:
        distance = DistanceMetric(metric.lower())
    except ValueError:
        raise typer.BadParameter(f"Unknown metric '{metric}'")

    try:
        with _open_service(ctx) as service:
            repo = service.create_repository(
                name,
                model,
                metric=distance,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
            )
    except DocVectorError as e:
        _fail(e)

    console.print(
        f"[green]✓ Created repository '{repo.name}' "
        f"(model={repo.model_id}, dims={repo.dimensions}, metric={repo.metric.value})[/green]"
    )


@app.command("repo-list")
def repo_list(ctx: typer.Context):
    """
    📚 List repositories.
    """
    try:
        with _open_service(ctx) as service:
            repositories = service.list_repositories()
    except DocVectorError as e:
        _fail(e)

    if not repositories:
        console.print("[yellow]No repositories.[/yellow]")
        return

    table = Table(show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Model")
    table.add_column("Dims", justify="right")
    table.add_column("Metric")
    table.add_column("Chunking")
    table.add_column("Active")

    for repo in repositories:
        table.add_row(
            repo.name,
            repo.model_id,
            str(repo.dimensions),
            repo.metric.value,
            f"{repo.chunk_size}/{repo.chunk_overlap}",
            "✓" if repo.active else "✗",
        )
    console.print(table)


@app.command("repo-deactivate")
def repo_deactivate(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Repository name."),
):
    """
    ⏸️ Stop accepting ingestion for a repository (search and delete keep working).
    """
    try:
        with _open_service(ctx) as service:
            service.deactivate_repository(name)
    except DocVectorError as e:
        _fail(e)

    console.print(f"[green]✓ Deactivated repository '{name}'[/green]")


# ─────────────────────────────────────────────────────────────────────────────
# Ingestion Commands
# ─────────────────────────────────────────────────────────────────────────────


@app.command()
def ingest(
    ctx: typer.Context,
    repository: str = typer.Argument(..., help="Repository name."),
    file: Optional[Path] = typer.Argument(None, help="Text file to ingest."),
    text: Optional[str] = typer.Option(None, "--text", "-t", help="Inline content."),
    meta: Optional[list[str]] = typer.Option(
        None, "--meta", "-m", help="Metadata as key=value (repeatable)."
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Per-call timeout (s)."),
):
    """
    📥 Index a document from a file or inline text.

    Examples:
        docvector ingest docs notes.txt --meta source=notes
        docvector ingest docs -t "the quick brown fox"
    """
    if (file is None) == (text is None):
        raise typer.BadParameter("Provide exactly one of FILE or --text")

    if file is not None:
        if not file.exists():
            console.print(f"[red]File not found: {file}[/red]")
            raise typer.Exit(1)
        content = file.read_text(encoding="utf-8")
    else:
        content = text or ""

    metadata = parse_pairs(meta)

    try:
        with _open_service(ctx) as service:
            result = service.ingest(repository, content, metadata=metadata, timeout=timeout)
    except DocVectorError as e:
        _fail(e)

    if result.ok:
        note = " (already indexed)" if result.skipped else ""
        console.print(
            f"[green]✓ {result.document_id} {result.status_label}{note}: "
            f"{result.chunk_count} chunks[/green]"
        )
    else:
        console.print(f"[red]✗ {result.document_id} {result.status_label}[/red]")
        if result.error:
            console.print(f"[dim]{result.error}[/dim]")
        raise typer.Exit(2)


@app.command()
def delete(
    ctx: typer.Context,
    repository: str = typer.Argument(..., help="Repository name."),
    document_id: str = typer.Argument(..., help="Document id."),
):
    """
    🗑️ Delete a document and its vectors.
    """
    try:
        with _open_service(ctx) as service:
            result = service.delete(repository, document_id)
    except DocVectorError as e:
        _fail(e)

    console.print(
        f"[green]✓ Deleted {result.document_id} ({result.vectors_removed} vectors)[/green]"
    )


@app.command()
def reconcile(ctx: typer.Context):
    """
    🔁 Resume documents stuck in pending/embedding.
    """
    try:
        with _open_service(ctx) as service:
            report = service.reconcile()
    except DocVectorError as e:
        _fail(e)

    console.print(f"[bold]Reconciliation:[/bold] {report.summary()}")
    for line in report.errors:
        console.print(f"  [red]•[/red] {line}")


# ─────────────────────────────────────────────────────────────────────────────
# Query Commands
# ─────────────────────────────────────────────────────────────────────────────


@app.command()
def search(
    ctx: typer.Context,
    repository: str = typer.Argument(..., help="Repository name."),
    query: str = typer.Argument(..., help="Query text."),
    top_k: Optional[int] = typer.Option(None, "--top-k", "-k", help="Documents to return."),
    filters: Optional[list[str]] = typer.Option(
        None, "--filter", "-f", help="Metadata filter key=value (repeatable)."
    ),
    as_json: bool = typer.Option(False, "--json", help="Print hits as JSON."),
):
    """
    🔍 Search a repository.

    Examples:
        docvector search docs "quick fox" -k 1
        docvector search docs "quarterly report" -f year=2024
    """
    try:
        with _open_service(ctx) as service:
            hits = service.search(repository, query, top_k=top_k, filters=parse_pairs(filters))
    except DocVectorError as e:
        _fail(e)

    if as_json:
        console.print_json(json.dumps([hit.model_dump() for hit in hits], default=str))
        return

    if not hits:
        console.print("[yellow]No results.[/yellow]")
        return

    table = Table(show_header=True)
    table.add_column("#", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Document", style="cyan")
    table.add_column("Chunk", justify="right")
    table.add_column("Metadata")

    for i, hit in enumerate(hits, 1):
        table.add_row(
            str(i),
            f"{hit.score:.4f}",
            hit.document_id[:16],
            str(hit.chunk_sequence),
            truncate_text(json.dumps(hit.metadata, default=str), 60),
        )
    console.print(table)


@app.command()
def status(
    ctx: typer.Context,
    repository: str = typer.Argument(..., help="Repository name."),
    document_id: Optional[str] = typer.Argument(None, help="Document id (optional)."),
):
    """
    📊 Show repository statistics or one document's status.
    """
    try:
        with _open_service(ctx) as service:
            if document_id:
                document = service.get_document(repository, document_id)
                console.print(Panel(
                    f"Status: [bold]{document.status_label}[/bold]\n"
                    f"Chunks: {document.chunk_count}\n"
                    f"Metadata: {json.dumps(document.metadata, default=str)}\n"
                    f"Created: {document.created_at:%Y-%m-%d %H:%M:%S}\n"
                    f"Updated: {document.updated_at:%Y-%m-%d %H:%M:%S}",
                    title=document.id,
                ))
                return
            stats = service.repository_stats(repository)
    except DocVectorError as e:
        _fail(e)

    console.print(Panel(
        f"Model: {stats['model_id']} ({stats['dimensions']} dims)\n"
        f"Active: {'yes' if stats['active'] else 'no'}\n"
        f"Documents: {stats['documents']}\n"
        f"Vectors: {stats['vectors']}",
        title=f"📊 {stats['repository']}",
    ))
    for name, count in stats["by_status"].items():
        console.print(f"  • {name}: {count}")


@app.command("list")
def list_documents(
    ctx: typer.Context,
    repository: str = typer.Argument(..., help="Repository name."),
    offset: int = typer.Option(0, "--offset", help="Documents to skip."),
    limit: int = typer.Option(20, "--limit", "-n", help="Page size."),
    status_filter: Optional[str] = typer.Option(
        None, "--status", "-s", help="Only documents in this status."
    ),
):
    """
    📄 List a repository's documents.
    """
    from docvector.shared.schemas import DocumentStatus

    try:
        wanted = DocumentStatus(status_filter) if status_filter else None
    except ValueError:
        raise typer.BadParameter(f"Unknown status '{status_filter}'")

    try:
        with _open_service(ctx) as service:
            page = service.list_documents(repository, offset=offset, limit=limit, status=wanted)
    except DocVectorError as e:
        _fail(e)

    table = Table(show_header=True)
    table.add_column("Document", style="cyan")
    table.add_column("Status")
    table.add_column("Chunks", justify="right")
    table.add_column("Updated")

    for document in page.items:
        table.add_row(
            document.id[:16],
            document.status_label,
            str(document.chunk_count),
            f"{document.updated_at:%Y-%m-%d %H:%M:%S}",
        )
    console.print(table)
    console.print(
        f"[dim]{page.offset + 1 if page.items else 0}-{page.offset + len(page.items)} "
        f"of {page.total}[/dim]"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────────────────────────────────────


def cli():
    """CLI entry point."""
    app()
