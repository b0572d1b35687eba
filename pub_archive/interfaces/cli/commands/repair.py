from __future__ import annotations

from collections.abc import Callable

from rich.console import Console

from pub_archive.app.bootstrap import AppRuntime, build_runtime
from pub_archive.interfaces.cli.commands.runtime import open_runtime
from pub_archive.shared.settings import Settings


def run_repair_command(
    *,
    settings: Settings,
    console: Console,
    runtime_builder: Callable[..., AppRuntime] = build_runtime,
) -> list[str]:
    runtime = open_runtime(settings=settings, console=console, runtime_builder=runtime_builder)
    try:
        repaired = list(runtime.repaired_article_ids) + runtime.sqlite_store.repair_latest_flags()
    finally:
        runtime.close()

    if not repaired:
        console.print("[green]Latest-version flags are consistent.[/green]")
        return repaired
    for article_id in repaired:
        console.print(f"  repaired {article_id}")
    return repaired
