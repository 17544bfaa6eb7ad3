"""Kiosk relay CLI: run the gateway and manage the product knowledge base."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from kiosk_relay.config import get_settings
from kiosk_relay.models import KnowledgeRecord

console = Console()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Kiosk Relay: realtime voice assistant gateway for booth kiosks."""
    level = logging.DEBUG if verbose else get_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


# ======================================================================
# SERVE: relay gateway
# ======================================================================
@main.command()
@click.option("--host", default=None, help="Override host")
@click.option("--port", "-p", default=None, type=int, help="Override port")
def serve(host: str | None, port: int | None) -> None:
    """Start the WebSocket relay."""
    import uvicorn

    settings = get_settings()
    if not settings.backend_available:
        console.print("[yellow]GEMINI_API_KEY is not set; live sessions will fail.[/]")
    uvicorn.run(
        "kiosk_relay.relay.gateway:create_relay_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        reload=False,
    )


# ======================================================================
# INDEX: load knowledge records
# ======================================================================
def load_records(path: Path) -> list[KnowledgeRecord]:
    """Read records from a JSON array or a JSON-lines file."""
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return []
    if text.startswith("["):
        rows = json.loads(text)
    else:
        rows = [json.loads(line) for line in text.splitlines() if line.strip()]
    return [KnowledgeRecord.model_validate(row) for row in rows]


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def index(file: Path) -> None:
    """Index {source, topic, content} records from FILE."""
    from kiosk_relay.knowledge.store import KnowledgeStore

    try:
        records = load_records(file)
    except (json.JSONDecodeError, ValidationError) as exc:
        console.print(f"[red]Could not read records from {file}: {exc}[/]")
        sys.exit(1)

    if not records:
        console.print("[yellow]No records found.[/]")
        return

    with console.status(f"[bold cyan]Indexing {len(records)} records..."):
        store = KnowledgeStore()
        added = store.add_records(records)

    console.print(
        f"[bold green]Indexed {added} new passages[/] "
        f"(skipped {len(records) - added}, total: {store.count()})"
    )


# ======================================================================
# SEARCH: retrieval check
# ======================================================================
@main.command()
@click.argument("query")
@click.option("--source", "-s", default=None, help="Filter by source document")
@click.option("--n-results", "-n", default=None, type=int, help="Passages to retrieve")
@click.option("--min-score", default=None, type=float, help="Drop passages below this score")
def search(query: str, source: str | None, n_results: int | None, min_score: float | None) -> None:
    """Show the passages a search_knowledge call would see."""
    from kiosk_relay.knowledge.store import KnowledgeStore

    settings = get_settings()
    with console.status("[bold cyan]Searching knowledge base..."):
        hits = KnowledgeStore().search(
            query,
            n_results=n_results or settings.search_top_k,
            filter_source=source,
            min_score=settings.search_min_score if min_score is None else min_score,
        )

    if not hits:
        console.print("[yellow]No relevant passages.[/]")
        return

    table = Table(title="Retrieved Passages", show_lines=True)
    table.add_column("#", width=3)
    table.add_column("Score", width=6)
    table.add_column("Source", max_width=40)
    table.add_column("Topic", max_width=30)
    table.add_column("Content", max_width=80)
    for i, hit in enumerate(hits, 1):
        table.add_row(
            str(i),
            f"{hit.score:.3f}",
            hit.source,
            hit.topic,
            hit.content[:200] + "..." if len(hit.content) > 200 else hit.content,
        )
    console.print(table)


# ======================================================================
# PRODUCTS: distinct sources
# ======================================================================
@main.command()
def products() -> None:
    """List products known to the knowledge base."""
    from kiosk_relay.knowledge.store import KnowledgeStore

    settings = get_settings()
    store = KnowledgeStore()
    excluded = set(settings.excluded_sources)
    names = [s for s in store.list_sources() if s not in excluded]

    console.print(Panel(
        f"[bold]Passages:[/] {store.count()}\n"
        f"[bold]Collection:[/] {settings.collection_name}\n"
        f"[bold]Vector store:[/] {settings.vectorstore_dir}",
        title="[bold cyan]Knowledge Base[/]",
    ))
    if not names:
        console.print("[yellow]No products found.[/]")
        return

    table = Table(title="Products")
    table.add_column("Source")
    for name in names:
        table.add_row(name)
    console.print(table)


if __name__ == "__main__":
    main()
