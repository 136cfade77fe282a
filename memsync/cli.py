"""
CLI interface for conversation memory and project indexing.

Usage:
    memsync add user "how do I fix this bug?"
    memsync index ~/src/myproject --tag myproject
    memsync update ~/src/myproject
    memsync search "bug in parser"
    memsync serve
"""

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import PERIODS, MemoryClient, MemoryService
from .config import MemsyncConfig, get_config_dir, load_or_create_config
from .logging_config import (
    configure_ops_log,
    configure_quiet_mode,
    enable_debug_mode,
    is_verbose,
)
from .store import StoreError
from .types import IndexedFile, Message, SyncRun, parse_utc_timestamp


# Configure quiet mode by default (suppress verbose library output)
# Set MEMSYNC_VERBOSE=1 to enable debug mode via environment
if is_verbose():
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_config_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _config_callback(value: Optional[Path]):
    global _config_override
    _config_override = value


app = typer.Typer(
    name="memsync",
    help="Conversation memory and project file mirroring.",
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
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    config_dir: Annotated[Optional[Path], typer.Option(
        "--config-dir", "-c",
        envvar="MEMSYNC_CONFIG_DIR",
        help="Directory holding memsync.toml (default: ~/.config/memsync)",
        callback=_config_callback,
        is_eager=True,
    )] = None,
):
    """Conversation memory and project file mirroring."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]

TagOption = Annotated[
    Optional[str],
    typer.Option(
        "--tag", "-t",
        help="Project label"
    )
]


# -----------------------------------------------------------------------------
# Setup
# -----------------------------------------------------------------------------

def _load_config() -> MemsyncConfig:
    config_dir = _config_override or get_config_dir()
    try:
        return load_or_create_config(Path(config_dir))
    except (ValueError, OSError) as e:
        typer.echo(f"Error: invalid configuration: {e}", err=True)
        raise typer.Exit(1)


def _get_service(config: Optional[MemsyncConfig] = None) -> MemoryService:
    """Build the service (client + buffer) from config, creating collections."""
    import atexit

    config = config or _load_config()
    configure_ops_log(config.path)
    try:
        service = MemoryService.from_config(config)
    except (ValueError, StoreError) as e:
        typer.echo(f"Error: cannot open store at {config.store_url}: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(service.close)
    return service


def _get_client() -> MemoryClient:
    return _get_service().client


def _fail(e: Exception) -> None:
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Output
# -----------------------------------------------------------------------------

def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _truncate(text: str, width: int = 80) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


def _format_message(m: Message) -> str:
    score = f" [{m.score:.3f}]" if m.score is not None else ""
    tags = f"  ({', '.join(m.tags)})" if m.tags else ""
    return f"{m.timestamp}  {m.id}  {m.role:<9}{score} {_truncate(m.content)}{tags}"


def _print_messages(messages: list[Message]) -> None:
    if _get_json_output():
        _echo_json([m.to_dict() for m in messages])
        return
    if not messages:
        typer.echo("No messages found.")
        return
    for m in messages:
        typer.echo(_format_message(m))


def _print_files(files: list[IndexedFile]) -> None:
    if _get_json_output():
        _echo_json([f.to_dict(include_content=False) for f in files])
        return
    if not files:
        typer.echo("No files found.")
        return
    for f in files:
        score = f" [{f.score:.3f}]" if f.score is not None else ""
        label = f"  #{f.tag}" if f.tag else ""
        typer.echo(f"{f.path}  ({f.language}){score}{label}")


def _print_run(run: SyncRun, verb: str) -> None:
    if _get_json_output():
        _echo_json(run.to_dict())
    else:
        typer.echo(
            f"{verb} {run.root}: {run.succeeded} indexed "
            f"({run.new} new, {run.modified} updated), "
            f"{run.skipped} skipped, {run.failed} failed"
        )
        for error in run.errors:
            typer.echo(f"  failed: {error.path}: {error.reason}", err=True)
        if run.missing:
            typer.echo(
                f"  {len(run.missing)} indexed files no longer exist "
                f"(run 'memsync prune {run.root}' to remove them)"
            )
        if run.cancelled:
            typer.echo("  cancelled before completion", err=True)
    if run.systemic_failure:
        typer.echo(
            f"Error: failed to index any files ({run.attempted} attempted)",
            err=True,
        )
        raise typer.Exit(1)


def _parse_time(value: str) -> datetime:
    try:
        return parse_utc_timestamp(value)
    except ValueError:
        raise typer.BadParameter(f"Not an ISO date/time: {value}")


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------

@app.command()
def add(
    role: Annotated[str, typer.Argument(help="user, assistant or system")],
    content: Annotated[str, typer.Argument(help="Message text")],
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Tag for the message (repeatable)"
    )] = None,
):
    """Add a conversation message."""
    client = _get_client()
    try:
        message = client.add_message(role, content, tags=tag)
    except (ValueError, StoreError) as e:
        _fail(e)
    if _get_json_output():
        _echo_json(message.to_dict())
    else:
        typer.echo(message.id)


@app.command()
def history(
    limit: LimitOption = 10,
    role: Annotated[Optional[str], typer.Option("--role", "-r", help="Only this role")] = None,
    since: Annotated[Optional[str], typer.Option("--since", help="ISO date/time lower bound")] = None,
    until: Annotated[Optional[str], typer.Option("--until", help="ISO date/time upper bound")] = None,
):
    """Show recent messages, most recent first."""
    client = _get_client()
    try:
        messages = client.get_history(
            limit,
            role=role,
            since=_parse_time(since) if since else None,
            until=_parse_time(until) if until else None,
        )
    except (ValueError, StoreError) as e:
        _fail(e)
    _print_messages(messages)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query text")],
    limit: LimitOption = 5,
):
    """Search conversation messages by meaning."""
    client = _get_client()
    try:
        messages = client.search(query, limit)
    except (ValueError, StoreError) as e:
        _fail(e)
    _print_messages(messages)


@app.command()
def tag(
    tag_name: Annotated[str, typer.Argument(metavar="TAG", help="Tag to append")],
    ids: Annotated[list[str], typer.Argument(help="Message ids")],
):
    """Append a tag to messages."""
    client = _get_client()
    try:
        count = client.tag_messages(ids, tag_name)
    except (ValueError, StoreError) as e:
        _fail(e)
    typer.echo(f"Tagged {count} messages with {tag_name}")


@app.command()
def tagged(
    tag_name: Annotated[str, typer.Argument(metavar="TAG", help="Tag to look up")],
    limit: LimitOption = 10,
):
    """List messages carrying a tag."""
    client = _get_client()
    try:
        messages = client.get_messages_by_tag(tag_name, limit)
    except (ValueError, StoreError) as e:
        _fail(e)
    _print_messages(messages)


@app.command()
def summarize(
    query: Annotated[str, typer.Argument(help="Query selecting messages")],
    summary: Annotated[str, typer.Argument(help="Summary to attach")],
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Tag to append (repeatable)"
    )] = None,
    limit: LimitOption = 5,
):
    """Attach a summary and tags to the messages matching a query."""
    client = _get_client()
    try:
        messages = client.summarize_and_tag(query, summary, tag or [], limit)
    except (ValueError, StoreError) as e:
        _fail(e)
    if _get_json_output():
        _echo_json([m.to_dict() for m in messages])
    else:
        typer.echo(f"Summarized {len(messages)} messages")


@app.command()
def delete(
    id: Annotated[str, typer.Argument(help="Message id")],
):
    """Delete one message."""
    client = _get_client()
    try:
        deleted = client.delete_message(id)
    except (ValueError, StoreError) as e:
        _fail(e)
    if not deleted:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted: {id}")


@app.command("delete-all")
def delete_all(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
):
    """Delete every conversation message (project files are kept)."""
    if not yes:
        typer.confirm("Delete all conversation messages?", abort=True)
    client = _get_client()
    try:
        count = client.delete_all_messages()
    except StoreError as e:
        _fail(e)
    typer.echo(f"Deleted {count} messages")


@app.command("delete-range")
def delete_range(
    start: Annotated[Optional[str], typer.Option("--start", help="ISO date/time lower bound")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="ISO date/time upper bound")] = None,
    period: Annotated[Optional[str], typer.Option(
        "--period", "-p",
        help=f"Current period instead of a range: {', '.join(PERIODS)}"
    )] = None,
):
    """Delete messages created in a time range or the current day/week/month."""
    if period and (start or end):
        typer.echo("Error: Specify either --period or --start/--end, not both", err=True)
        raise typer.Exit(1)
    if not period and not (start and end):
        typer.echo("Error: Specify --period, or both --start and --end", err=True)
        raise typer.Exit(1)
    client = _get_client()
    try:
        if period:
            count = client.delete_current_period(period)
        else:
            count = client.delete_messages_in_range(_parse_time(start), _parse_time(end))
    except (ValueError, StoreError) as e:
        _fail(e)
    typer.echo(f"Deleted {count} messages")


# -----------------------------------------------------------------------------
# Project files
# -----------------------------------------------------------------------------

@app.command()
def index(
    path: Annotated[Path, typer.Argument(help="Project root directory")] = Path("."),
    tag: TagOption = None,
    force: Annotated[bool, typer.Option(
        "--force", "-f",
        help="Re-index unchanged files too"
    )] = False,
):
    """Index a project directory."""
    import signal

    client = _get_client()
    # Ctrl+C stops after the current file and reports what was done
    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        run = client.index_project(str(path), tag or "", force=force, cancel=cancel)
    except (ValueError, OSError, StoreError) as e:
        _fail(e)
    finally:
        signal.signal(signal.SIGINT, previous)
    _print_run(run, "Indexed")


@app.command()
def update(
    path: Annotated[Path, typer.Argument(help="Project root directory")] = Path("."),
):
    """Re-index files changed since the last run."""
    client = _get_client()
    try:
        run = client.update_project(str(path))
    except (ValueError, OSError, StoreError) as e:
        _fail(e)
    _print_run(run, "Updated")


@app.command()
def prune(
    path: Annotated[Path, typer.Argument(help="Project root directory")] = Path("."),
):
    """Remove indexed files that no longer exist on disk."""
    client = _get_client()
    try:
        removed = client.prune_project(str(path))
    except (ValueError, OSError, StoreError) as e:
        _fail(e)
    if _get_json_output():
        _echo_json(removed)
        return
    for rel in removed:
        typer.echo(f"removed {rel}")
    typer.echo(f"Pruned {len(removed)} files")


@app.command()
def files(
    query: Annotated[Optional[str], typer.Argument(help="Search query (omit to list)")] = None,
    tag: TagOption = None,
    project: Annotated[Optional[Path], typer.Option(
        "--project", "-P",
        help="Only files of this project root"
    )] = None,
    limit: LimitOption = 20,
):
    """Search or list indexed project files."""
    client = _get_client()
    project_root = str(project) if project else None
    try:
        if query:
            results = client.search_project_files(query, limit, tag=tag, project=project_root)
        else:
            results = client.list_project_files(project=project_root, tag=tag, limit=limit)
    except (ValueError, StoreError) as e:
        _fail(e)
    _print_files(results)


@app.command("delete-file")
def delete_file(
    path: Annotated[str, typer.Argument(help="Project-relative file path")],
    project: Annotated[Optional[Path], typer.Option(
        "--project", "-P",
        help="Project root (default: every project)"
    )] = None,
):
    """Delete an indexed project file."""
    client = _get_client()
    try:
        count = client.delete_project_file(path, project=str(project) if project else None)
    except (ValueError, StoreError) as e:
        _fail(e)
    if not count:
        typer.echo(f"Not found: {path}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {count} records for {path}")


@app.command("delete-files")
def delete_files(
    tag: TagOption = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
):
    """Delete indexed project files: all of them, or those with --tag."""
    if not yes:
        what = f"project files tagged {tag!r}" if tag else "ALL project files"
        typer.confirm(f"Delete {what}?", abort=True)
    client = _get_client()
    try:
        if tag:
            count = client.delete_project_files_by_tag(tag)
        else:
            count = client.delete_all_project_files()
    except (ValueError, StoreError) as e:
        _fail(e)
    typer.echo(f"Deleted {count} project files")


# -----------------------------------------------------------------------------
# Stats and servers
# -----------------------------------------------------------------------------

@app.command()
def stats():
    """Show message and project file counts."""
    client = _get_client()
    try:
        data = client.get_stats()
    except StoreError as e:
        _fail(e)
    if _get_json_output():
        _echo_json(data)
        return
    typer.echo(f"Total vectors: {data['total_vectors']}")
    for role, count in data["message_count"].items():
        typer.echo(f"  {role}: {count}")
    typer.echo(f"Project files: {data['project_file_count']}")


@app.command()
def mcp():
    """Start MCP stdio server for AI agent integration."""
    import signal
    from .mcp import run_stdio

    # anyio's stdin reader shields the blocking readline from cancellation,
    # so the first Ctrl+C would otherwise be ignored
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))
    run_stdio(_get_service())


@app.command()
def serve(
    host: Annotated[Optional[str], typer.Option("--host", help="HTTP bind address")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="HTTP port")] = None,
    no_mcp: Annotated[bool, typer.Option(
        "--no-mcp",
        help="Serve HTTP only (no MCP stdio loop)"
    )] = False,
):
    """Run the HTTP API, and the MCP stdio server on the same state."""
    import uvicorn
    from .http_api import create_app

    config = _load_config()
    service = _get_service(config)
    server = uvicorn.Server(uvicorn.Config(
        create_app(service),
        host=host or config.http_host,
        port=port or config.http_port,
        log_level="warning",
    ))
    if no_mcp:
        server.run()
        return

    from .mcp import run_stdio
    thread = threading.Thread(target=server.run, name="memsync-http", daemon=True)
    thread.start()
    try:
        run_stdio(service)
    finally:
        server.should_exit = True
        thread.join(timeout=5)


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception, user_message
        log_path = log_exception(e, context="memsync CLI")
        typer.echo(f"Error: {user_message(e)}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
