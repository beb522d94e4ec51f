# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Command-line interface for inspecting and maintaining checkpoint stores."""

import json
from datetime import datetime
from typing import Any, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from superstep import __version__
from superstep.config.settings import load_settings
from superstep.core.async_utils import run_sync
from superstep.core.errors import SuperstepError
from superstep.core.logging_config import configure_logging
from superstep.framework.checkpoint import BaseCheckpointer, Checkpoint, CheckpointBackend
from superstep.framework.checkpointer import create_checkpointer

app = typer.Typer(
    name="superstep",
    help="Inspect and maintain superstep checkpoint stores",
    add_completion=False,
)

console = Console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"superstep v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level (TRACE..ERROR)"),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """superstep - checkpoint store administration."""
    configure_logging(log_level, add_handler=True)


def _open_store(db: Optional[str], backend: Optional[str]) -> BaseCheckpointer:
    settings = load_settings()
    name = (backend or settings.checkpoint_backend).lower()
    try:
        kind = CheckpointBackend(name)
    except ValueError:
        console.print(f"[bold red]Error:[/] Unknown backend '{name}' (use sqlite or json)")
        raise typer.Exit(1)
    if kind is CheckpointBackend.MEMORY:
        # Nothing to inspect in a fresh process; default to the durable store.
        kind = CheckpointBackend.SQLITE
    return create_checkpointer(kind, db or settings.checkpoint_path)


def _run(store: BaseCheckpointer, coro: Any) -> Any:
    try:
        return run_sync(coro)
    except SuperstepError as e:
        console.print(f"[bold red]Error:[/] {e.message}")
        raise typer.Exit(1)
    finally:
        store.close()


def _timestamp(value: float) -> str:
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


DB_OPTION = typer.Option(None, "--db", help="Database file (sqlite) or directory (json)")
BACKEND_OPTION = typer.Option(None, "--backend", "-b", help="Checkpoint backend: sqlite or json")


@app.command()
def threads(db: Optional[str] = DB_OPTION, backend: Optional[str] = BACKEND_OPTION) -> None:
    """List threads that have checkpoints."""
    store = _open_store(db, backend)

    async def collect() -> List[tuple]:
        rows = []
        for thread_id in await store.list_threads():
            latest = await store.load_latest(thread_id)
            if latest is not None:
                rows.append((thread_id, latest))
        return rows

    rows = _run(store, collect())
    if not rows:
        console.print("[dim]No threads found[/dim]")
        return

    table = Table(title="Threads")
    table.add_column("Thread", style="cyan")
    table.add_column("Latest seq", justify="right")
    table.add_column("Status", style="green")
    table.add_column("Updated")
    for thread_id, latest in rows:
        if latest.interrupts:
            status = "[yellow]interrupted[/yellow]"
        elif latest.active_frontier:
            status = f"next: {', '.join(latest.active_frontier)}"
        else:
            status = "completed"
        table.add_row(
            thread_id, str(latest.sequence_number), status, _timestamp(latest.created_at)
        )
    console.print(table)


@app.command()
def history(
    thread_id: str = typer.Argument(..., help="Thread to show"),
    db: Optional[str] = DB_OPTION,
    backend: Optional[str] = BACKEND_OPTION,
) -> None:
    """Show a thread's checkpoint history, oldest first."""
    store = _open_store(db, backend)

    async def collect() -> List[Checkpoint]:
        return [cp async for cp in store.list_history(thread_id)]

    checkpoints = _run(store, collect())
    if not checkpoints:
        console.print(f"[dim]No checkpoints for thread '{thread_id}'[/dim]")
        raise typer.Exit(1)

    table = Table(title=f"History of {thread_id}")
    table.add_column("Seq", justify="right")
    table.add_column("Checkpoint", style="cyan")
    table.add_column("Parent", style="dim")
    table.add_column("Step", justify="right")
    table.add_column("Source")
    table.add_column("Writes")
    table.add_column("Next")
    for cp in checkpoints:
        table.add_row(
            str(cp.sequence_number),
            cp.checkpoint_id,
            cp.parent_checkpoint_id or "-",
            str(cp.metadata.get("step", "")),
            str(cp.metadata.get("source", "")),
            ", ".join(cp.metadata.get("writes", [])),
            "[yellow]interrupted[/yellow]"
            if cp.interrupts
            else (", ".join(cp.active_frontier) or "END"),
        )
    console.print(table)


@app.command()
def show(
    thread_id: str = typer.Argument(..., help="Thread of the checkpoint"),
    checkpoint_id: Optional[str] = typer.Argument(None, help="Checkpoint (default: latest)"),
    db: Optional[str] = DB_OPTION,
    backend: Optional[str] = BACKEND_OPTION,
) -> None:
    """Print one checkpoint's state, frontier and pending interrupts."""
    store = _open_store(db, backend)
    if checkpoint_id:
        checkpoint = _run(store, store.load(thread_id, checkpoint_id))
    else:
        checkpoint = _run(store, store.load_latest(thread_id))
    if checkpoint is None:
        console.print(f"[bold red]Error:[/] Thread '{thread_id}' has no checkpoints")
        raise typer.Exit(1)

    body = json.dumps(checkpoint.to_dict(), indent=2, default=repr)
    console.print(
        Panel(
            Syntax(body, "json"),
            title=f"[bold blue]{checkpoint.checkpoint_id}[/bold blue]",
            expand=False,
        )
    )


@app.command("delete-thread")
def delete_thread(
    thread_id: str = typer.Argument(..., help="Thread to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    db: Optional[str] = DB_OPTION,
    backend: Optional[str] = BACKEND_OPTION,
) -> None:
    """Delete every checkpoint of a thread."""
    if not yes:
        typer.confirm(f"Delete all checkpoints of thread '{thread_id}'?", abort=True)
    store = _open_store(db, backend)
    deleted = _run(store, store.delete_thread(thread_id))
    console.print(f"Deleted [bold]{deleted}[/bold] checkpoint(s) from '{thread_id}'")


@app.command()
def prune(
    keep: int = typer.Option(10, "--keep", "-k", min=0, help="Checkpoints to keep per thread"),
    thread_id: Optional[str] = typer.Option(None, "--thread", "-t", help="Only prune this thread"),
    db: Optional[str] = DB_OPTION,
    backend: Optional[str] = BACKEND_OPTION,
) -> None:
    """Keep only the newest checkpoints of each thread."""
    store = _open_store(db, backend)
    deleted = _run(store, store.prune(thread_id=thread_id, keep_last=keep))
    console.print(f"Pruned [bold]{deleted}[/bold] checkpoint(s)")


if __name__ == "__main__":
    app()
