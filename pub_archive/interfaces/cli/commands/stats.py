from __future__ import annotations

from collections.abc import Callable

import typer
from rich.console import Console
from rich.table import Table

from pub_archive.app.bootstrap import AppRuntime, build_runtime
from pub_archive.interfaces.cli.commands.runtime import open_runtime
from pub_archive.shared.settings import Settings


def run_stats_command(
    *,
    settings: Settings,
    console: Console,
    runtime_builder: Callable[..., AppRuntime] = build_runtime,
) -> dict[str, object]:
    if not settings.sqlite_path.exists():
        console.print(f"[red]SQLite database not found: {settings.sqlite_path}[/red]")
        raise typer.Exit(code=1)

    runtime = open_runtime(settings=settings, console=console, runtime_builder=runtime_builder)
    try:
        stats = runtime.sqlite_store.get_stats()
        batches = runtime.sqlite_store.list_export_batches()
    finally:
        runtime.close()

    table = Table(title="Archive Stats")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("sqlite path", str(settings.sqlite_path))
    table.add_row("article versions", str(stats["total_versions"]))
    table.add_row("unique articles", str(stats["unique_articles"]))
    table.add_row("latest versions", str(stats["latest_articles"]))
    table.add_row("unexported latest", str(stats["unexported_latest"]))
    table.add_row("export batches", str(stats["batch_count"]))
    table.add_row("exported articles", str(stats["total_exported"]))
    table.add_row("exported size (MB)", f"{stats['total_size_mb']:.2f}")
    table.add_row("published batches", str(stats["published_batches"]))
    table.add_row("scrape runs", str(stats["scrape_runs"]))
    table.add_row("last scrape", str(stats["last_scrape_date"] or "-"))
    console.print(table)

    if batches:
        batch_table = Table(title="Export Batches")
        batch_table.add_column("Batch")
        batch_table.add_column("Articles", justify="right")
        batch_table.add_column("Size (MB)", justify="right")
        batch_table.add_column("Published")
        for batch in batches:
            batch_table.add_row(
                batch.batch_name,
                str(batch.article_count),
                f"{batch.file_size_mb or 0.0:.2f}",
                batch.publish_tx_id or "-",
            )
        console.print(batch_table)
    return stats
