"""CLI commands for convmem."""

import asyncio
import json
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from convmem import __logo__, __version__

app = typer.Typer(
    name="convmem",
    help=f"{__logo__} convmem - conversation memory with rolling summaries",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} convmem v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """convmem - conversation memory with rolling summaries."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")
    ctx.obj = {"config_path": config_path}


def _memory(ctx: typer.Context):
    """Build the composite memory from the selected configuration."""
    from convmem.config.loader import load_config
    from convmem.memory.backends import CompositeMemory

    config = load_config(ctx.obj.get("config_path") if ctx.obj else None)
    return CompositeMemory.from_config(config)


def _open(memory, session_id: str):
    """Open a session, turning an unreadable file into a clean CLI error."""
    from convmem.session.log import SessionCorruptedError

    try:
        return memory.sessions.get(session_id)
    except SessionCorruptedError as e:
        console.print(f"[red]Error: {e}[/red]")
        console.print("[dim]The file must be repaired by hand.[/dim]")
        raise typer.Exit(1)


# ============================================================================
# Session Commands
# ============================================================================


@app.command()
def sessions(ctx: typer.Context):
    """List stored sessions."""
    memory = _memory(ctx)
    rows = memory.sessions.list_sessions()

    if not rows:
        console.print("No sessions.")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Records", justify="right")
    table.add_column("Summary")
    table.add_column("Updated")

    for row in rows:
        summary = "[green]yes[/green]" if row["has_summary"] else "[dim]no[/dim]"
        table.add_row(row["session_id"], str(row["record_count"]), summary, row["updated_at"] or "")

    console.print(table)


@app.command()
def show(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID"),
    all: bool = typer.Option(False, "--all", "-a", help="Show every stored record"),
):
    """Show a session's summary and recent records."""
    memory = _memory(ctx)
    state = _open(memory, session_id)

    summary = state.summary.load()
    if summary.summary:
        console.print(f"[bold]Summary[/bold] [dim](through #{summary.checkpoint})[/dim]")
        console.print(summary.summary)
        console.print()

    records = state.log.records() if all else state.log.recent(memory.recent_window)
    if not records:
        console.print("No records.")
        return

    table = Table(title=f"Records of {session_id}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Role", style="cyan")
    table.add_column("Content")
    for r in records:
        table.add_row(str(r.sequence), r.role, r.content)
    console.print(table)


@app.command()
def stats(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID"),
):
    """Print session statistics as JSON."""
    memory = _memory(ctx)
    _open(memory, session_id)
    console.print_json(json.dumps(asyncio.run(memory.stats(session_id))))


@app.command()
def clear(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Empty a session's records and summary."""
    if not yes:
        typer.confirm(f"Clear all records and the summary of {session_id}?", abort=True)

    memory = _memory(ctx)
    _open(memory, session_id)
    asyncio.run(memory.clear(session_id))
    console.print(f"[green]✓[/green] Cleared {session_id}")


@app.command()
def delete(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID"),
):
    """Delete a session's files."""
    memory = _memory(ctx)
    if asyncio.run(memory.delete(session_id)):
        console.print(f"[green]✓[/green] Deleted {session_id}")
    else:
        console.print(f"[red]Session {session_id} not found[/red]")
        raise typer.Exit(1)


@app.command()
def migrate(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID"),
):
    """Rewrite a session stored in the legacy line format."""
    memory = _memory(ctx)
    state = _open(memory, session_id)
    console.print(
        f"[green]✓[/green] {session_id}: {len(state.log)} record(s), "
        f"next sequence {state.log.next_sequence}"
    )


@app.command()
def compact(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID"),
    force: bool = typer.Option(False, "--force", "-f", help="Summarize even below the threshold"),
):
    """Run compaction for a session now."""
    from convmem.agent.compactor import CompactionError

    memory = _memory(ctx)
    _open(memory, session_id)

    try:
        result = asyncio.run(memory.compact(session_id, force=force))
    except CompactionError as e:
        console.print(f"[red]Compaction failed: {e}[/red]")
        raise typer.Exit(1)

    if result is None:
        console.print("Nothing to compact.")
        return
    console.print(
        f"[green]✓[/green] Summarized {result.summarized} record(s) through #{result.checkpoint}, "
        f"dropped {result.dropped}, summary ~{result.summary_tokens} tokens"
    )


if __name__ == "__main__":
    app()
