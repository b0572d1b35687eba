from __future__ import annotations

from collections.abc import Callable

import typer
from rich.console import Console

from pub_archive.app.bootstrap import AppRuntime, build_runtime
from pub_archive.export.tracker import ExportTracker
from pub_archive.interfaces.cli.commands.runtime import open_runtime
from pub_archive.shared.errors import StorageError
from pub_archive.shared.settings import Settings


def run_confirm_publish_command(
    *,
    settings: Settings,
    console: Console,
    batch_name: str,
    tx_id: str,
    alias: str | None,
    runtime_builder: Callable[..., AppRuntime] = build_runtime,
) -> None:
    if not tx_id.strip():
        console.print("[red]--tx-id must not be empty.[/red]")
        raise typer.Exit(code=1)

    use_alias = alias or settings.publish_alias
    runtime = open_runtime(settings=settings, console=console, runtime_builder=runtime_builder)
    try:
        found = ExportTracker(runtime.sqlite_store).confirm_publish(batch_name, tx_id.strip(), use_alias)
    except StorageError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        runtime.close()

    if not found:
        console.print(f"[red]Unknown export batch: {batch_name}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Recorded publication of {batch_name} as {tx_id.strip()} ({use_alias})[/green]")
