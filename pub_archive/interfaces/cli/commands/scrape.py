from __future__ import annotations

from collections.abc import Callable

import typer
from rich.console import Console
from rich.table import Table

from pub_archive.app.bootstrap import AppRuntime, SourceName, build_runtime, build_scrape_service, build_source
from pub_archive.ingest.html_client import HtmlSiteClient
from pub_archive.ingest.pubpub_client import PubPubClient
from pub_archive.ingest.service import ScrapeSummary
from pub_archive.interfaces.cli.commands.runtime import open_runtime
from pub_archive.shared.errors import NonRetryableError
from pub_archive.shared.settings import Settings


def _summary_table(summary: ScrapeSummary) -> Table:
    table = Table(title="Scrape Summary")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("fetched", str(summary.fetched))
    table.add_row("inserted", str(summary.inserted))
    table.add_row("updated", str(summary.updated))
    table.add_row("unchanged", str(summary.unchanged))
    table.add_row("errors", str(summary.errors))
    table.add_row("skipped (invalid)", str(summary.skipped))
    table.add_row("stop reason", "limit reached" if summary.limit_reached else summary.stop_reason)
    table.add_row("duration (s)", f"{summary.duration_seconds:.1f}")
    return table


def run_scrape_command(
    *,
    settings: Settings,
    console: Console,
    limit: int | None,
    incremental: bool,
    source: SourceName,
    runtime_builder: Callable[..., AppRuntime] = build_runtime,
    source_builder: Callable[[Settings, SourceName], PubPubClient | HtmlSiteClient] = build_source,
) -> ScrapeSummary:
    if limit is not None and limit <= 0:
        console.print("[red]--limit must be a positive integer.[/red]")
        raise typer.Exit(code=1)

    runtime = open_runtime(settings=settings, console=console, runtime_builder=runtime_builder)
    try:
        client = source_builder(settings, source)
        try:
            try:
                client.login()
            except NonRetryableError as exc:
                console.print(f"[red]Authentication failed: {exc}[/red]")
                raise typer.Exit(code=1) from exc

            if limit is not None:
                console.print(f"[yellow]Test mode: limiting to {limit} publications[/yellow]")
            summary = build_scrape_service(runtime, client).run(limit=limit, incremental=incremental)
        finally:
            client.close()
    finally:
        runtime.close()

    console.print(_summary_table(summary))
    if summary.stop_reason != "completed":
        console.print(f"[yellow]Fetch stopped early ({summary.stop_reason}): {summary.last_error}[/yellow]")
        console.print("[yellow]Everything reconciled so far has been kept.[/yellow]")
    if summary.exit_code:
        console.print("[red]No records were stored successfully.[/red]")
        raise typer.Exit(code=summary.exit_code)
    return summary
