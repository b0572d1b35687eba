from __future__ import annotations

import logging

import typer
from rich.console import Console

from pub_archive.app.bootstrap import build_source
from pub_archive.interfaces.cli.commands.export import run_export_command
from pub_archive.interfaces.cli.commands.publish import run_confirm_publish_command
from pub_archive.interfaces.cli.commands.repair import run_repair_command
from pub_archive.interfaces.cli.commands.scrape import run_scrape_command
from pub_archive.interfaces.cli.commands.stats import run_stats_command
from pub_archive.shared.settings import get_settings

app = typer.Typer(help="Versioned local archive of a PubPub community.")
console = Console()


@app.callback()
def _main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(levelname)s: %(message)s")


@app.command()
def scrape(
    limit: int = typer.Option(
        None,
        "--limit",
        "-n",
        help="Stop after this many publications (test runs).",
    ),
    incremental: bool = typer.Option(
        False,
        "--incremental",
        help="Only fetch publications updated since the last recorded scrape run.",
    ),
    source: str = typer.Option(
        "api",
        "--source",
        help="Where to read publications from: api (JSON API) or html (public site).",
    ),
) -> None:
    """Fetch publications and reconcile them into the version store."""
    if source not in ("api", "html"):
        console.print(f"[red]Unknown source: {source} (expected api or html)[/red]")
        raise typer.Exit(code=1)
    run_scrape_command(
        settings=get_settings(),
        console=console,
        limit=limit,
        incremental=incremental,
        source="html" if source == "html" else "api",
        source_builder=build_source,
    )


@app.command()
def export(
    limit: int = typer.Option(
        None,
        "--limit",
        "-n",
        help="Maximum articles in the batch (defaults to the configured batch size).",
    ),
    batch_name: str = typer.Option(
        None,
        "--batch-name",
        help="Batch name; defaults to batch-<UTC timestamp>.",
    ),
) -> None:
    """Write unexported latest versions to a Parquet batch and mark them exported."""
    run_export_command(settings=get_settings(), console=console, limit=limit, batch_name=batch_name)


@app.command("confirm-publish")
def confirm_publish(
    batch_name: str = typer.Argument(..., help="Export batch that was published."),
    tx_id: str = typer.Option(..., "--tx-id", help="Remote storage transaction id."),
    alias: str = typer.Option(None, "--alias", help="Naming-service alias (defaults to the configured one)."),
) -> None:
    """Record that an export batch has been published remotely."""
    run_confirm_publish_command(
        settings=get_settings(),
        console=console,
        batch_name=batch_name,
        tx_id=tx_id,
        alias=alias,
    )


@app.command()
def repair() -> None:
    """Ensure every article has exactly one latest version."""
    run_repair_command(settings=get_settings(), console=console)


@app.command()
def stats() -> None:
    run_stats_command(settings=get_settings(), console=console)


if __name__ == "__main__":
    app()
