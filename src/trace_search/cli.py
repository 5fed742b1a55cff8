"""CLI for trace-search."""

import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from trace_search import __version__

app = typer.Typer(
    name="trace-search",
    help="Index and search archived Claude conversation transcripts.",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"trace-search {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-V", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging")] = False,
) -> None:
    """Index and search conversation transcripts."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _resolve_index_path(index_path: Path | None) -> Path:
    from trace_search.storage import default_index_path

    return index_path if index_path is not None else default_index_path()


@app.command()
def index(
    sessions_dir: Annotated[
        Path | None,
        typer.Option("--sessions-dir", help="Directory of Claude Code JSONL sessions"),
    ] = None,
    index_path: Annotated[
        Path | None, typer.Option("--index-path", help="Where to write the index JSON")
    ] = None,
    summaries: Annotated[
        Path | None,
        typer.Option("--summaries", help="JSON file of {conversation_id: title or {title, summary}}"),
    ] = None,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", "-d", help="Show what would be indexed")
    ] = False,
    workers: Annotated[
        int | None, typer.Option("--workers", "-w", help="Threads for per-conversation indexing")
    ] = None,
) -> None:
    """Build the search index from session logs."""
    from trace_search.converter import SESSIONS_DIR
    from trace_search.indexer import index_sessions, load_summaries
    from trace_search.storage import save_index

    summary_map = None
    if summaries is not None:
        try:
            summary_map = load_summaries(summaries)
        except (OSError, ValueError) as e:
            console.print(f"[red]Cannot read summaries: {e}[/red]")
            raise typer.Exit(1) from e

    built = index_sessions(
        sessions_dir or SESSIONS_DIR, summary_map, dry_run=dry_run, workers=workers
    )
    if built is None:
        return

    path = _resolve_index_path(index_path)
    save_index(built, path)
    console.print(f"Index written to {path}")


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query")],
    scope: Annotated[
        str, typer.Option("--scope", "-s", help="Restrict to: all, user, assistant, tools")
    ] = "all",
    time_range: Annotated[
        str, typer.Option("--time", "-t", help="Time range: all, today, week, month")
    ] = "all",
    model: Annotated[
        list[str] | None,
        typer.Option("--model", "-m", help="Only conversations using this model (can repeat)"),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of results")] = 10,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    index_path: Annotated[
        Path | None, typer.Option("--index-path", help="Index JSON to search")
    ] = None,
) -> None:
    """Search indexed conversations for a query."""
    if not query.strip():
        console.print("[red]Error: Query required[/red]")
        raise typer.Exit(1)

    from trace_search.models import SearchFilters
    from trace_search.searcher import perform_search
    from trace_search.storage import IndexFormatError

    filters = SearchFilters(scope=scope, time_range=time_range, models=frozenset(model or ()))
    try:
        perform_search(
            query,
            _resolve_index_path(index_path),
            filters,
            limit=limit,
            json_output=json_output,
        )
    except IndexFormatError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e


@app.command()
def status(
    index_path: Annotated[
        Path | None, typer.Option("--index-path", help="Index JSON to inspect")
    ] = None,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show per-model conversation counts")
    ] = False,
) -> None:
    """Show index statistics."""
    from trace_search.storage import IndexFormatError, get_index_stats

    try:
        stats = get_index_stats(_resolve_index_path(index_path))
    except IndexFormatError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e

    console.print(f"Conversations indexed: {stats['conversation_count']}")
    console.print(f"Tokens used: {stats['token_count']}")
    console.print(f"Index path: {stats['index_path']}")
    console.print(f"Index size: {stats['index_size_human']}")
    if stats["generated_at"]:
        console.print(f"Last indexed: {stats['generated_at']}")

    if verbose and stats["model_counts"]:
        console.print("\n[bold]Per-model breakdown:[/bold]")
        for model_name, count in stats["model_counts"].items():
            console.print(f"  [cyan]{model_name}[/cyan]: {count} conversations")


if __name__ == "__main__":
    app()
