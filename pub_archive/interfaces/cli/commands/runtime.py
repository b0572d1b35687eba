from __future__ import annotations

from collections.abc import Callable

import typer
from rich.console import Console

from pub_archive.app.bootstrap import AppRuntime, build_runtime
from pub_archive.shared.errors import StorageError
from pub_archive.shared.settings import Settings


def open_runtime(
    *,
    settings: Settings,
    console: Console,
    runtime_builder: Callable[..., AppRuntime] = build_runtime,
) -> AppRuntime:
    try:
        runtime = runtime_builder(settings=settings)
    except StorageError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    if runtime.repaired_article_ids:
        console.print(
            f"[yellow]Repaired latest-version flags for {len(runtime.repaired_article_ids)} article(s)[/yellow]"
        )
    return runtime
