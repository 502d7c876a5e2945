"""
bookrag - CLI Entry Point
--------------------------
Exposes Typer commands for ingestion and question answering.

Usage:
    python -m bookrag.main ingest                      # Chunk, embed, index docs/
    python -m bookrag.main ingest --docs-dir book/docs # Different docs tree
    python -m bookrag.main ask "What is a ROS 2 node?" # Single-shot query
    python -m bookrag.main ask                         # Interactive loop
    python -m bookrag.main status                      # Index + last ingestion
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from bookrag.config import Settings, load_settings
from bookrag.errors import InvalidInputError, RAGError
from bookrag.utils.helpers import load_json, truncate_text
from bookrag.utils.logger import setup_logger

app = typer.Typer(
    name="bookrag",
    help="bookrag - question answering grounded in a technical book",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _settings(config: str) -> Settings:
    try:
        settings = load_settings(config)
    except InvalidInputError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2)
    setup_logger(settings.logging.level, settings.logging.file, settings.logging.serialize)
    return settings


# --- Commands -----------------------------------------------------------------

@app.command()
def ingest(
    config: str = typer.Option(
        "config/config.yaml", "--config", "-c", help="Path to pipeline config YAML"
    ),
    docs_dir: Optional[str] = typer.Option(
        None, "--docs-dir", help="Docs tree to ingest (defaults to source.docs_dir)"
    ),
    no_prune: bool = typer.Option(
        False, "--no-prune", help="Keep indexed documents that are no longer in the docs tree"
    ),
    workers: int = typer.Option(
        4, "--workers", "-w", help="Documents chunked and embedded in parallel"
    ),
) -> None:
    """
    Chunk, embed and index the docs tree.

    \b
    Steps:
      1. Load Markdown/MDX chapters (front matter -> metadata)
      2. Boundary-aware chunking + embeddings, replaced per document
      3. Save the FAISS collection and the run report
    Safe to re-run: unchanged documents produce an unchanged index.
    """
    from bookrag.embedding.embedder import make_embedder
    from bookrag.embedding.pipeline import run_ingestion

    settings = _settings(config)
    try:
        report = run_ingestion(
            settings,
            make_embedder(settings.embedding),
            docs_dir=docs_dir,
            prune=not no_prune,
            max_workers=workers,
        )
    except (FileNotFoundError, RAGError) as exc:
        console.print(f"[red]Ingestion failed: {exc}[/red]")
        raise typer.Exit(1)
    if report.failures:
        raise typer.Exit(1)


@app.command()
def ask(
    question: Optional[str] = typer.Argument(
        None, help="Question to answer (omit for interactive loop)"
    ),
    selected: Optional[str] = typer.Option(
        None, "--selected", "-s", help="Highlighted passage the question is about"
    ),
    module: Optional[str] = typer.Option(
        None, "--module", "-m", help="Restrict retrieval to one module of the book"
    ),
    config: str = typer.Option(
        "config/config.yaml", "--config", "-c", help="Path to pipeline config YAML"
    ),
    json_out: bool = typer.Option(
        False, "--json", help="Print result as JSON (single-query mode only)"
    ),
) -> None:
    """
    Answer questions from the indexed book.

    \b
    Steps per query:
      1. Embed the question, search the collection, apply the score threshold
      2. Nothing relevant -> honest "not covered" answer, no model call
      3. Otherwise generate from numbered evidence and list the sources
    """
    from bookrag.schemas import Query
    from bookrag.serving.pipeline import RAGPipeline

    settings = _settings(config)

    # Verify index exists before loading
    if not Path(settings.index.index_dir).exists():
        console.print(
            f"[red]Index directory not found: {settings.index.index_dir}[/red]\n"
            "Run ingestion first: [bold]python -m bookrag.main ingest[/bold]"
        )
        raise typer.Exit(1)

    with console.status("[cyan]Loading index...[/cyan]"):
        pipeline = RAGPipeline.from_settings(settings)

    metadata_filter = {"module": module} if module else None

    def run(text: str):
        try:
            q = Query(question_text=text, selected_text=selected, metadata_filter=metadata_filter)
            return pipeline.query(q)
        except ValueError as exc:
            # pydantic ValidationError and InvalidInputError are both ValueErrors
            console.print(f"[red]Invalid question: {exc}[/red]")
        except RAGError as exc:
            console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        return None

    # --- Single-shot mode -----------------------------------------------------
    if question:
        result = run(question)
        if result is None:
            raise typer.Exit(1)
        if json_out:
            console.print_json(json.dumps(result.to_dict(), indent=2))
        else:
            _print_result(result)
        return

    # --- Interactive loop -----------------------------------------------------
    console.print()
    console.print("[bold]Ask anything about the book.[/bold]")
    console.print("[dim]Type 'exit', 'quit', or press Ctrl+C to quit.[/dim]\n")

    while True:
        try:
            raw = console.input("[bold cyan]You[/bold cyan] > ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye.[/dim]")
            break

        if not raw:
            continue
        if raw.lower() in {"exit", "quit", "q"}:
            console.print("[dim]Goodbye.[/dim]")
            break

        with console.status("[cyan]Thinking...[/cyan]"):
            result = run(raw)
        if result is not None:
            _print_result(result)


def _print_result(result) -> None:
    """Render a QueryResult to the terminal using Rich."""
    border = "green" if result.found_evidence and not result.policy_blocked else "yellow"
    console.print()
    console.print(
        Panel(
            Markdown(result.answer),
            title=f"[bold {border}]Answer[/bold {border}]",
            border_style=border,
            expand=True,
        )
    )

    # Sources table
    if result.sources:
        table = Table(
            "No.", "Title", "Source", "Section",
            box=box.SIMPLE,
            show_header=True,
            header_style="bold dim",
        )
        for i, src in enumerate(result.sources, start=1):
            table.add_row(
                str(i),
                truncate_text(src.title, 50),
                truncate_text(src.source_path, 50),
                truncate_text(src.section, 40),
            )
        console.print(table)

    # Stats footer
    console.print(
        f"[dim]"
        f"path={' -> '.join(s.name for s in result.path)}  "
        f"retrieve={result.retrieval_ms:.0f}ms  "
        f"generate={result.generation_ms:.0f}ms"
        f"[/dim]\n"
    )


@app.command()
def status(
    config: str = typer.Option(
        "config/config.yaml", "--config", "-c", help="Path to pipeline config YAML"
    ),
) -> None:
    """Show the collection manifest and the last ingestion run."""
    settings = _settings(config)
    coll_dir = Path(settings.index.index_dir) / settings.index.collection_name
    manifest_path = coll_dir / "collection.json"
    if not manifest_path.exists():
        console.print(
            f"[yellow]No collection found at {coll_dir}.  "
            "Run: python -m bookrag.main ingest[/yellow]"
        )
        raise typer.Exit(1)

    manifest = load_json(manifest_path)
    console.print()
    console.print(f"[bold]Collection {manifest['collection_name']!r}[/bold]")
    console.print(f"  Model     : {manifest['embedding_model_version']}")
    console.print(f"  Dimension : {manifest['vector_dimension']}")
    console.print(f"  Metric    : {manifest['distance_metric']}")
    console.print(f"  Vectors   : [green]{manifest.get('total_vectors', 0):,}[/green]")
    console.print(f"  Documents : [green]{manifest.get('total_documents', 0):,}[/green]")

    report_path = coll_dir / "last_ingestion.json"
    if report_path.exists():
        report = load_json(report_path)
        console.print()
        console.print("[bold]Last ingestion[/bold]")
        console.print(f"  Completed : {report.get('completed_at')}")
        console.print(f"  Indexed   : {report.get('documents_indexed')} documents, {report.get('chunks_indexed')} chunks")
        console.print(f"  Pruned    : {report.get('documents_pruned')}")
        failures = report.get("failures", {})
        colour = "red" if failures else "green"
        console.print(f"  Failures  : [{colour}]{len(failures)}[/{colour}]")
        for path, reason in failures.items():
            console.print(f"    [yellow]{path}[/yellow]: {reason}")
    console.print()


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
