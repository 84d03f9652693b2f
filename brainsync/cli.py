"""
CLI interface for the notebook.

Usage:
    brainsync add "buy milk @tomorrow;"
    brainsync list task
    brainsync find "milk"
"""

import asyncio
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from typing_extensions import Annotated

from .api import Notebook, RecordNotFoundError
from .classifier import classify, parse_due_marker
from .logging_config import configure_quiet_mode, enable_debug_mode
from .migration import MigrationError
from .remote import RemoteStoreError
from .types import Kind, Priority, Record, Task

T = TypeVar("T")

# Set BRAINSYNC_VERBOSE=1 to enable debug mode via environment
if os.environ.get("BRAINSYNC_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_store_override: Optional[Path] = None


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="brainsync",
    help="Offline-first notebook for thoughts, tasks, tagged notes and investments.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="BRAINSYNC_STORE_PATH",
        help="Path to the store directory",
    )] = None,
):
    """Offline-first notebook for thoughts, tasks, tagged notes and investments."""
    global _store_override
    _store_override = store


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

KindArg = Annotated[str, typer.Argument(help="thought, task, tagged_note or investment")]


def _parse_kind(value: str) -> Kind:
    try:
        return Kind.parse(value)
    except ValueError:
        raise typer.BadParameter(f"Unknown kind {value!r}")


def _parse_date(value: str):
    """Parse YYYY-MM-DD, 'today' or 'tomorrow' into a UTC midnight datetime."""
    rest, due = parse_due_marker(f"@{value}")
    if due is None or rest.strip():
        raise typer.BadParameter(f"Invalid date {value!r} (use YYYY-MM-DD, today or tomorrow)")
    return due


def _format_record(record: Record) -> str:
    line = f"{record.id}  {record.created_at:%Y-%m-%d}  "
    if isinstance(record, Task):
        line += "[x] " if record.is_completed else "[ ] "
        if record.priority != Priority.MEDIUM:
            line += f"!{record.priority.value} "
    line += record.content
    if isinstance(record, Task) and record.due_date is not None:
        line += f"  (due {record.due_date:%Y-%m-%d})"
    tags = getattr(record, "tags", ())
    if tags:
        line += "  " + " ".join(tags)
    return line


def _open_notebook() -> Notebook:
    try:
        return Notebook(_get_store_override())
    except (OSError, ValueError) as e:
        typer.echo(f"Error opening store: {e}", err=True)
        raise typer.Exit(1)


async def _try_session(nb: Notebook) -> bool:
    """Start a session if a remote store is configured. Offline is not fatal."""
    if not nb.config.remote.enabled:
        return False
    try:
        await nb.start_session(nb.config.remote.user_id or None)
    except (RemoteStoreError, MigrationError, ValueError) as e:
        typer.echo(f"Working offline: {e}", err=True)
        return False
    return True


def _run(fn: Callable[[Notebook], Awaitable[T]], *, online: bool = True) -> T:
    """Open the notebook, run fn, wait for mirror writes, close."""

    async def runner() -> T:
        nb = _open_notebook()
        try:
            if online:
                await _try_session(nb)
            result = await fn(nb)
            await nb.wait_idle()
            return result
        finally:
            await nb.close()

    return asyncio.run(runner())


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    text: Annotated[str, typer.Argument(help="Text to classify and store")],
):
    """Classify text and store it.

    '#rad ...' is a tagged note, '#invest ...' an investment note,
    text ending in ';' a task (optionally '@YYYY-MM-DD;'), else a thought.
    """
    if not text.strip():
        typer.echo("Error: nothing to add", err=True)
        raise typer.Exit(1)

    async def go(nb: Notebook):
        result = classify(
            text,
            note_tag=nb.config.classifier.note_tag,
            investment_tag=nb.config.classifier.investment_tag,
        )
        return result.kind, await nb.add(result.kind, result.content, **result.fields())

    kind, record = _run(go)
    typer.echo(f"{kind.value} {record.id}")


@app.command("list")
def list_cmd(
    kind: KindArg,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum records")] = 0,
):
    """List records of a kind, newest first."""
    k = _parse_kind(kind)

    async def go(nb: Notebook):
        return nb.list(k)

    records = _run(go, online=False)
    if limit > 0:
        records = records[:limit]
    for record in records:
        typer.echo(_format_record(record))


@app.command()
def done(
    id: Annotated[str, typer.Argument(help="Task id")],
    undo: Annotated[bool, typer.Option("--undo", help="Mark as not completed")] = False,
):
    """Mark a task completed."""

    async def go(nb: Notebook):
        return await nb.update(Kind.TASK, id, is_completed=not undo)

    if _run(go) is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"{id} {'reopened' if undo else 'done'}")


@app.command()
def due(
    id: Annotated[str, typer.Argument(help="Task id")],
    date: Annotated[Optional[str], typer.Argument(help="YYYY-MM-DD, today or tomorrow")] = None,
    clear: Annotated[bool, typer.Option("--clear", help="Remove the due date")] = False,
):
    """Set or clear a task's due date (syncs the calendar event)."""
    if clear == (date is not None):
        typer.echo("Error: give a DATE or --clear", err=True)
        raise typer.Exit(1)
    when = None if clear else _parse_date(date)

    async def go(nb: Notebook):
        return await nb.update(Kind.TASK, id, due_date=when)

    task = _run(go)
    if task is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(_format_record(task))


@app.command()
def edit(
    kind: KindArg,
    id: Annotated[str, typer.Argument(help="Record id")],
    text: Annotated[str, typer.Argument(help="New text (reclassified)")],
):
    """Replace a record's text; moves it if the text now classifies differently."""
    k = _parse_kind(kind)

    async def go(nb: Notebook):
        return await nb.smart_edit(k, id, text)

    record = _run(go)
    if record is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"{record.kind.value} {_format_record(record)}")


@app.command()
def rm(
    kind: KindArg,
    id: Annotated[str, typer.Argument(help="Record id")],
):
    """Delete a record permanently."""
    k = _parse_kind(kind)

    async def go(nb: Notebook):
        return await nb.delete(k, id)

    if not _run(go):
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {id}")


@app.command()
def convert(
    id: Annotated[str, typer.Argument(help="Record id")],
    source: KindArg,
    target: KindArg,
):
    """Move a record to another kind (new id, content kept)."""
    source_kind = _parse_kind(source)
    target_kind = _parse_kind(target)
    if source_kind == target_kind:
        typer.echo(f"Error: already a {target_kind.value}", err=True)
        raise typer.Exit(1)

    async def go(nb: Notebook):
        return await nb.convert(target_kind, id, source_kind)

    record = _run(go)
    if record is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"{target_kind.value} {record.id}")


@app.command()
def find(
    query: Annotated[str, typer.Argument(help="Search text")] = "",
    kind: Annotated[Optional[list[str]], typer.Option("--kind", "-k", help="Restrict to kind")] = None,
    tag: Annotated[Optional[list[str]], typer.Option("--tag", "-t", help="Tag filter")] = None,
    completed: Annotated[Optional[bool], typer.Option(
        "--completed/--pending", help="Task completion filter",
    )] = None,
    priority: Annotated[Optional[Priority], typer.Option("--priority", "-p")] = None,
):
    """Search records across kinds."""
    kinds = [_parse_kind(k) for k in kind] if kind else None

    async def go(nb: Notebook):
        return nb.search(query, kinds=kinds, tags=tag, completed=completed, priority=priority)

    results = _run(go, online=False)
    if not results:
        typer.echo("No matches", err=True)
        return
    for result in results:
        typer.echo(f"{result.kind.value:<12} {_format_record(result.record)}")


@app.command()
def subtags():
    """List the sub-tags used by tagged notes."""

    async def go(nb: Notebook):
        return nb.subtags()

    for tag in _run(go, online=False):
        typer.echo(tag)


@app.command()
def sync():
    """Start a session: migrate if needed, send queued writes, pull."""

    async def go(nb: Notebook):
        if not nb.config.remote.enabled:
            typer.echo("Error: no remote configured ([remote] api_url, api_key)", err=True)
            raise typer.Exit(1)
        info = await nb.start_session(nb.config.remote.user_id or None)
        await nb.wait_idle()
        info["pending"] = nb.outbox.count(info["user_id"])
        return info

    info = _run(go, online=False)
    if info["migrated"]:
        counts = ", ".join(f"{n} {name}" for name, n in info["migrated"].items())
        typer.echo(f"Migrated {counts}")
    drained = info["drained"]
    typer.echo(f"Sent {drained['processed']} queued writes ({info['pending']} pending)")
    if info["pulled"] is None:
        typer.echo("Pull failed; see brainsync-ops.log", err=True)
    else:
        typer.echo(f"Pulled {sum(info['pulled'].values())} records")


@app.command()
def outbox(
    retry: Annotated[bool, typer.Option("--retry", help="Requeue failed writes")] = False,
):
    """Show queued and failed remote writes."""

    async def go(nb: Notebook):
        box = nb.outbox
        requeued = box.retry_failed() if retry else 0
        return requeued, box.count(), box.list_failed()

    requeued, pending, failed = _run(go, online=False)
    if retry:
        typer.echo(f"Requeued {requeued} failed writes")
    typer.echo(f"Pending: {pending}")
    typer.echo(f"Failed: {len(failed)}")
    for entry in failed:
        typer.echo(
            f"  #{entry['seq']} {entry['op']} {entry['kind']} {entry['record_id']}: "
            f"{entry['last_error']}"
        )


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except RecordNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="brainsync CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
