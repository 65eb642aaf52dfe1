from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .controller import RunController, log_completion
from .errors import HeapRebuildError
from .gateway import SqlServerStore, open_store
from .logging import setup_logging
from .models import RunContext
from .settings import Settings, load_settings
from .work_queue import WorkQueueStore, open_work_queue

logger = logging.getLogger(__name__)


app = typer.Typer(
    add_completion=False,
    help="heap_rebuild: find and rebuild fragmented SQL Server heaps",
    rich_markup_mode="rich",
)
queue_app = typer.Typer(help="Inspect and curate the per-store work queue")
app.add_typer(queue_app, name="queue")
console = Console()


def _open_store(s: Settings) -> SqlServerStore:
    return open_store(s.HEAPS_DATABASE_URL or "")


def _open_queue(s: Settings, store: str) -> WorkQueueStore:
    return open_work_queue(s.HEAPS_QUEUE_DB_PATH, store)


# ═══════════════════════════════════════════════════════════════════════════════
# RUN
# ═══════════════════════════════════════════════════════════════════════════════

@app.command("run", help="[bold cyan]R[/bold cyan]un discovery and rebuild fragmented heaps")
def run(
    store: str = typer.Argument(..., help="Database whose heaps should be rebuilt"),
    schema: Optional[str] = typer.Option(None, "--schema", help="Rebuild only this schema's --table (bypasses the queue)"),
    table: Optional[str] = typer.Option(None, "--table", help="Rebuild only this table (requires --schema)"),
    min_pages: Optional[int] = typer.Option(None, "--min-pages", help="Only queue heaps with more pages than this"),
    max_heaps: Optional[int] = typer.Option(None, "--max-heaps", help="Heaps to rebuild in this run"),
    max_index_count: Optional[int] = typer.Option(None, "--max-index-count", help="Skip heaps with more nonclustered indexes"),
    max_row_count: Optional[int] = typer.Option(None, "--max-row-count", help="Skip heaps with more rows"),
    max_dop: Optional[int] = typer.Option(None, "--max-dop", help="MAXDOP for the rebuild (default: instance setting)"),
    online_only: bool = typer.Option(False, "--online-only", help="Only rebuild heaps that can be rebuilt online"),
    rebuild_queue: bool = typer.Option(False, "--rebuild-queue", help="Drop the work queue and scan again"),
    stop_after_scan: bool = typer.Option(False, "--stop-after-scan", help="Stop once the work queue is populated"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only print the commands (wins over --execute)"),
    execute: bool = typer.Option(False, "--execute", help="Issue the rebuilds (default: HEAPS_DRY_RUN, which is on)"),
):
    """Run the discovery + remediation workflow for one database.

    Exit codes: 0 when the run completed (even with nothing rebuilt),
    1 for invalid parameters, 2 when the run aborted on a database error.
    """
    s = load_settings()
    setup_logging(s)

    ctx = RunContext(
        store=store,
        schema_name=schema,
        table_name=table,
        min_pages=s.HEAPS_MIN_PAGES if min_pages is None else min_pages,
        process_heap_count=s.HEAPS_PROCESS_HEAP_COUNT if max_heaps is None else max_heaps,
        max_index_count=s.HEAPS_MAX_INDEX_COUNT if max_index_count is None else max_index_count,
        max_row_count=s.HEAPS_MAX_ROW_COUNT if max_row_count is None else max_row_count,
        max_dop=s.HEAPS_MAX_DOP if max_dop is None else max_dop,
        online_only=online_only,
        dry_run=True if dry_run else (False if execute else s.HEAPS_DRY_RUN),
        force_rescan=rebuild_queue,
        stop_after_discovery=stop_after_scan,
    )

    violations = ctx.validate()
    if violations:
        for msg in violations:
            logger.error(msg)
            console.print(f"[red]Error:[/red] {msg}")
        log_completion()
        raise typer.Exit(code=1)

    if not s.HEAPS_DATABASE_URL:
        console.print("[red]Error:[/red] HEAPS_DATABASE_URL is not configured.")
        raise typer.Exit(code=1)

    queue = _open_queue(s, store)
    try:
        sql_store = _open_store(s)
        outcome = RunController(ctx, sql_store, sql_store, queue).run()
    except HeapRebuildError as e:
        console.print(f"[red]Error ({e.code}):[/red] {e.message}")
        raise typer.Exit(code=2)
    finally:
        queue.close()

    if outcome.exit_code != 0:
        raise typer.Exit(code=outcome.exit_code)

    console.print(
        Panel.fit(
            "\n".join(
                [
                    f"Outcome: [cyan]{outcome.state.value}[/cyan]",
                    f"Heaps processed: [cyan]{outcome.processed:,}[/cyan]",
                    f"Mode: {'DRY-RUN (nothing executed)' if ctx.dry_run else 'EXECUTE'}",
                ]
            ),
            title=f"[bold]{store}[/bold]",
        )
    )


# ═══════════════════════════════════════════════════════════════════════════════
# QUEUE CURATION
# ═══════════════════════════════════════════════════════════════════════════════

def _require_queue(s: Settings, store: str) -> WorkQueueStore:
    queue = _open_queue(s, store)
    if not queue.exists():
        queue.close()
        console.print(f"[yellow]No work queue for {store}.[/yellow] [dim]The next run will scan.[/dim]")
        raise typer.Exit(code=0)
    return queue


@queue_app.command("show", help="Show queued heaps, most forwarded records first")
def queue_show(
    store: str = typer.Argument(..., help="Database whose queue to show"),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON lines"),
):
    s = load_settings()
    queue = _require_queue(s, store)
    try:
        rows = queue.all()
    finally:
        queue.close()

    if json_out:
        for c in rows:
            typer.echo(json.dumps(asdict(c), ensure_ascii=False))
        return

    t = Table(title=f"[bold]Work queue: {store}[/bold] ({len(rows):,} heaps)")
    t.add_column("object_id", justify="right")
    t.add_column("Table", style="bold")
    t.add_column("Pages", justify="right")
    t.add_column("Rows", justify="right")
    t.add_column("Forwarded", style="cyan", justify="right")
    t.add_column("NC idx", justify="right")
    t.add_column("Online", justify="center")
    for c in rows:
        t.add_row(
            str(c.object_id),
            f"{c.schema_name}.{c.table_name}",
            f"{c.page_count:,}",
            f"{c.record_count:,}",
            f"{c.forwarded_record_count:,}",
            str(c.index_count),
            "✓" if c.rebuild_online else "",
        )
    console.print(t)


@queue_app.command("remove", help="Remove one heap from the queue")
def queue_remove(
    store: str = typer.Argument(..., help="Database whose queue to edit"),
    object_id: Optional[int] = typer.Option(None, "--object-id", help="Object id to remove"),
    schema: Optional[str] = typer.Option(None, "--schema", help="Schema of the table to remove"),
    table: Optional[str] = typer.Option(None, "--table", help="Table to remove (requires --schema)"),
):
    by_name = bool(schema) or bool(table)
    if (object_id is None) == (not by_name) or (by_name and not (schema and table)):
        console.print("[red]Error:[/red] pass either --object-id or both --schema and --table.")
        raise typer.Exit(code=1)

    s = load_settings()
    queue = _require_queue(s, store)
    try:
        if object_id is not None:
            removed = 1 if queue.remove_one(object_id) else 0
        else:
            removed = queue.remove_by_schema_table(str(schema), str(table))
    finally:
        queue.close()
    console.print(f"[bold green]✓ Removed {removed} row(s)[/bold green] from {store}.")


@queue_app.command("clear", help="Delete every queued heap but keep the queue")
def queue_clear(store: str = typer.Argument(..., help="Database whose queue to clear")):
    s = load_settings()
    queue = _require_queue(s, store)
    try:
        removed = queue.clear()
    finally:
        queue.close()
    console.print(f"[bold green]✓ Cleared {removed:,} row(s)[/bold green] from {store}.")


@queue_app.command("drop", help="Drop the queue so the next run scans from scratch")
def queue_drop(store: str = typer.Argument(..., help="Database whose queue to drop")):
    s = load_settings()
    queue = _require_queue(s, store)
    try:
        queue.drop()
    finally:
        queue.close()
    console.print(f"[bold green]✓ Dropped work queue[/bold green] for {store}.")


def main() -> None:
    app()
