from __future__ import annotations

from collections.abc import Callable

import typer
from rich.console import Console

from pub_archive.app.bootstrap import AppRuntime, build_export_service, build_runtime
from pub_archive.export.service import ExportSummary
from pub_archive.interfaces.cli.commands.runtime import open_runtime
from pub_archive.shared.errors import StorageError
from pub_archive.shared.settings import Settings


def run_export_command(
    *,
    settings: Settings,
    console: Console,
    limit: int | None,
    batch_name: str | None,
    runtime_builder: Callable[..., AppRuntime] = build_runtime,
) -> ExportSummary:
    use_limit = limit if limit is not None else settings.export_batch_size
    if use_limit <= 0:
        console.print("[red]--limit must be a positive integer.[/red]")
        raise typer.Exit(code=1)

    runtime = open_runtime(settings=settings, console=console, runtime_builder=runtime_builder)
    try:
        summary = build_export_service(runtime).run(use_limit, batch_name=batch_name)
    except (StorageError, OSError) as exc:
        console.print(f"[red]Export failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        runtime.close()

    if summary.batch_name is None:
        console.print("[yellow]Nothing to export: every latest version is already exported.[/yellow]")
        return summary

    size_mb = (summary.file_size_bytes or 0) / 1024 / 1024
    console.print(f"[bold green]Exported batch {summary.batch_name}[/bold green]")
    console.print(f"Articles: {summary.article_count}")
    console.print(f"File: {summary.file_path} ({size_mb:.2f} MB)")
    return summary
