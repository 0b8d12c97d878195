"""Typer-based CLI for kodama (``kc``)."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .batch import BatchResult
from .config import KodamaConfig
from .errors import ConfigurationError, KodamaError, exit_code_for_exception
from .events import read_events
from .git import get_git_branch, get_git_commit
from .guardian import Guardian
from .models.snapshot import Snapshot
from .paths import StoragePaths
from .storage import SnapshotStore
from .tags import auto_tags, filter_by_tags, parse_tags, tag_stats
from .trash import TrashManager
from .validation import next_step, parse_period_days, parse_step

app = typer.Typer(
    name="kc",
    help="kodama - keep development context alive across assistant sessions",
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)


def _setup_logging(debug: bool) -> None:
    package_logger = logging.getLogger("kodama")
    package_logger.handlers.clear()
    handler = RichHandler(console=err_console, show_path=debug, rich_tracebacks=debug)
    package_logger.addHandler(handler)
    # Degraded-mode notices are only shown in debug mode
    package_logger.setLevel(logging.DEBUG if debug else logging.ERROR)
    package_logger.propagate = False


@app.callback()
def main_callback(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Verbose logging and full paths in errors (or KODAMA_DEBUG=1)",
    ),
):
    """Load configuration once for every command."""
    try:
        config = KodamaConfig.from_env()
    except ConfigurationError as e:
        err_console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(code=e.exit_code)

    if debug:
        config.debug = True
    _setup_logging(config.debug)
    ctx.obj = config


def _fail(error: BaseException) -> typer.Exit:
    err_console.print(f"[red]Error: {error}[/red]")
    return typer.Exit(code=exit_code_for_exception(error))


def _short(value: str, width: int = 50) -> str:
    return value if len(value) <= width else value[: width - 3] + "..."


def _print_batch(result: BatchResult, verb: str) -> None:
    if result.succeeded:
        console.print(f"[green]{verb} {result.count} snapshot(s)[/green]")
        for item_id in result.succeeded:
            console.print(f"  • {item_id}")
    if result.failed:
        console.print(f"[red]Failed for {len(result.failed)} snapshot(s):[/red]")
        for item_id, message in result.failed:
            console.print(f"  • {item_id}: {message}")
    if result.not_found:
        console.print(f"[yellow]Not found in trash ({len(result.not_found)}):[/yellow]")
        for item_id in result.not_found:
            console.print(f"  • {item_id}")


def _print_snapshot(snapshot: Snapshot) -> None:
    console.print(f"[bold]{snapshot.title}[/bold]")
    console.print(f"  [dim]ID:[/dim]        {snapshot.id}")
    console.print(f"  [dim]Timestamp:[/dim] {snapshot.timestamp}")
    console.print(f"  [dim]Step:[/dim]      {snapshot.step or '-'}")
    if snapshot.git_branch:
        console.print(f"  [dim]Git:[/dim]       {snapshot.git_branch} {snapshot.git_commit or ''}")
    if snapshot.tags:
        console.print(f"  [dim]Tags:[/dim]      {', '.join(snapshot.tags)}")
    if snapshot.context:
        console.print()
        console.print(snapshot.context)
    if snapshot.decisions:
        console.print("\n[cyan]Decisions[/cyan]")
        for decision in snapshot.decisions:
            console.print(f"  - {decision}")
    if snapshot.next_steps:
        console.print("\n[cyan]Next steps[/cyan]")
        for step in snapshot.next_steps:
            console.print(f"  - {step}")


@app.command()
def snap(
    ctx: typer.Context,
    title: str = typer.Option(..., "--title", "-t", help="Snapshot title"),
    step: str = typer.Option(None, "--step", "-s", help="requirements, designing, implementing or testing"),
    context: str = typer.Option("", "--context", "-c", help="Free-text notes"),
    decisions: List[str] = typer.Option([], "--decision", "-d", help="Decision (repeatable)"),
    next_steps: List[str] = typer.Option([], "--next", "-n", help="Next step (repeatable)"),
    tags: str = typer.Option(None, "--tags", help="Comma or space separated tags"),
    advance: bool = typer.Option(False, "--advance", help="Use the step after the latest snapshot's step"),
    no_git: bool = typer.Option(False, "--no-git", help="Skip git branch/commit capture"),
    as_json: bool = typer.Option(False, "--json", help="Print the saved snapshot as JSON"),
):
    """Save a snapshot of the current development context.

    Appends a snapshot_created event and archives old snapshots unless
    KODAMA_AUTO_ARCHIVE=false.
    """
    config: KodamaConfig = ctx.obj
    parsed_step = parse_step(step) if step else None
    if step and parsed_step is None:
        err_console.print(f"[red]Unknown step: {step}[/red]")
        raise typer.Exit(code=2)

    cwd = Path.cwd()
    branch = None if no_git else get_git_branch(cwd)
    commit = None if no_git else get_git_commit(cwd)

    try:
        store = SnapshotStore(config)
        if advance and parsed_step is None:
            latest = store.get_latest_snapshot()
            parsed_step = next_step(latest.step if latest else None)
        snapshot = store.save_snapshot(
            {
                "title": title,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "step": parsed_step,
                "context": context,
                "decisions": list(decisions),
                "nextSteps": list(next_steps),
                "tags": parse_tags(tags) + auto_tags(branch),
                "claudeSessionId": store.load_session_id(),
                "cwd": str(cwd),
                "gitBranch": branch,
                "gitCommit": commit,
            }
        )
        archived = store.trigger_auto_archive()
    except KodamaError as e:
        raise _fail(e)

    if as_json:
        console.print_json(snapshot.to_json())
        return

    console.print(f"[green]Snapshot saved:[/green] {snapshot.id}")
    console.print(f"  [dim]Title:[/dim]      {snapshot.title}")
    console.print(f"  [dim]Step:[/dim]       {snapshot.step or 'none'}")
    console.print(f"  [dim]Decisions:[/dim]  {len(snapshot.decisions)}")
    console.print(f"  [dim]Next steps:[/dim] {len(snapshot.next_steps)}")
    if archived is not None and archived.count:
        console.print(f"[dim]Archived {archived.count} old snapshot(s)[/dim]")


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    include_archived: bool = typer.Option(False, "--archived", "-a", help="Include archived snapshots"),
    tag: List[str] = typer.Option([], "--tag", help="Only snapshots with this tag (repeatable)"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum rows to show"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """List snapshots, newest first."""
    config: KodamaConfig = ctx.obj
    store = SnapshotStore(config)
    snapshots = filter_by_tags(store.list_snapshots(include_archived=include_archived), tag)[:limit]

    if as_json:
        console.print_json(
            json.dumps([s.model_dump(mode="json", by_alias=True, exclude_none=True) for s in snapshots])
        )
        return

    if not snapshots:
        console.print("[dim]No snapshots found[/dim]")
        return

    table = Table(title=f"{len(snapshots)} Snapshot(s)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Timestamp", style="dim")
    table.add_column("Step", style="magenta")
    table.add_column("Title")
    table.add_column("Tags", style="yellow")
    for snapshot in snapshots:
        table.add_row(
            snapshot.id[:8],
            snapshot.timestamp[:19].replace("T", " "),
            snapshot.step or "-",
            _short(snapshot.title),
            ", ".join(snapshot.tags[:3]),
        )
    console.print(table)


@app.command()
def show(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(None, help="Snapshot id or unique prefix (default: latest)"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Show one snapshot in full, or the latest with the decision display cap."""
    config: KodamaConfig = ctx.obj
    store = SnapshotStore(config)

    try:
        if snapshot_id is None:
            snapshot = store.get_latest_snapshot()
        else:
            snapshot = store.load_snapshot(snapshot_id)
            if snapshot is None:
                snapshot = store.load_snapshot(store.resolve_snapshot_id(snapshot_id))
    except KodamaError as e:
        raise _fail(e)

    if snapshot is None:
        console.print("[dim]No snapshots found[/dim]")
        raise typer.Exit(code=1)

    if as_json:
        console.print_json(snapshot.to_json())
    else:
        _print_snapshot(snapshot)


@app.command()
def archive(
    ctx: typer.Context,
    days: int = typer.Option(None, "--days", help="Age threshold in days (default: KODAMA_ARCHIVE_DAYS or 30)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be archived"),
):
    """Move snapshots older than the threshold into snapshots/archive/."""
    config: KodamaConfig = ctx.obj
    store = SnapshotStore(config)
    result = store.archive_old_snapshots(days, dry_run=dry_run)

    if dry_run:
        console.print(f"[dim]Would archive {result.count} snapshot(s)[/dim]")
        for item_id in result.succeeded:
            console.print(f"  • {item_id}")
        return
    _print_batch(result, "Archived")
    if result.failed:
        raise typer.Exit(code=1)


@app.command()
def delete(
    ctx: typer.Context,
    snapshot_ids: List[str] = typer.Argument(None, help="Snapshot ids or unique prefixes"),
    older_than: str = typer.Option(None, "--older-than", help='e.g. "30 days", "2 weeks"'),
    match: str = typer.Option(None, "--match", help="Shell-style id pattern, e.g. 'abc*'"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be deleted"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Move snapshots to the trash (restorable with 'kc restore')."""
    config: KodamaConfig = ctx.obj
    store = SnapshotStore(config)
    trash = TrashManager(config, store.paths)

    try:
        if older_than:
            targets = store.find_older_than(parse_period_days(older_than))
        elif match:
            targets = store.find_matching(match)
        elif snapshot_ids:
            targets = [store.resolve_snapshot_id(item) for item in snapshot_ids]
        else:
            err_console.print("[red]No snapshots specified for deletion[/red]")
            err_console.print("Usage: kc delete <id>... | --older-than <period> | --match <pattern>")
            raise typer.Exit(code=2)
    except KodamaError as e:
        raise _fail(e)

    targets = list(dict.fromkeys(targets))
    if not targets:
        console.print("[dim]No snapshots found matching the criteria[/dim]")
        return

    titles = {}
    for snapshot_id in targets:
        try:
            snapshot = store.load_snapshot(snapshot_id)
        except KodamaError:
            snapshot = None
        titles[snapshot_id] = snapshot.title if snapshot else None

    if dry_run:
        if as_json:
            console.print_json(json.dumps({"operation": "delete-preview", "targets": targets, "dry_run": True}))
        else:
            console.print(f"Would move {len(targets)} snapshot(s) to trash:")
            for index, snapshot_id in enumerate(targets, 1):
                console.print(f"  {index}. {snapshot_id} - {_short(titles[snapshot_id] or 'Untitled')}")
        return

    if not force and not as_json:
        console.print(f"Found {len(targets)} snapshot(s) to delete:")
        for index, snapshot_id in enumerate(targets, 1):
            console.print(f"  {index}. {snapshot_id} - {_short(titles[snapshot_id] or 'Untitled')}")
        if not typer.confirm(f"Move these {len(targets)} snapshot(s) to trash?", default=False):
            console.print("[yellow]Deletion cancelled[/yellow]")
            raise typer.Exit(code=1)

    result = trash.trash_many(targets, titles)

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        _print_batch(result, "Moved to trash:")
        console.print("[dim]Restore with: kc restore <id>[/dim]")
    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def restore(
    ctx: typer.Context,
    snapshot_ids: List[str] = typer.Argument(..., help="Trashed snapshot ids or unique prefixes"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be restored"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Restore snapshots from the trash to the live snapshots directory."""
    config: KodamaConfig = ctx.obj
    trash = TrashManager(config)

    if dry_run:
        for item_id in snapshot_ids:
            matches = trash.find_trash_item(item_id)
            if len(matches) == 1:
                item = matches[0]
                console.print(f"Would restore: {item.original_id} ({item.title or 'No title'})")
            elif matches:
                console.print(f"[yellow]Ambiguous: {item_id} matches {len(matches)} items[/yellow]")
            else:
                console.print(f"[yellow]Not found in trash: {item_id}[/yellow]")
        return

    result = trash.restore_many(snapshot_ids)

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        _print_batch(result, "Restored")
        if result.not_found:
            console.print("[dim]Use 'kc trash list' to see items in trash[/dim]")
    if not result.ok:
        raise typer.Exit(code=1)


trash_app = typer.Typer(help="Trash commands")
app.add_typer(trash_app, name="trash")


@trash_app.command("list")
def trash_list(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Show trashed snapshots, newest first."""
    trash = TrashManager(ctx.obj)
    items = trash.list_trash_items()

    if as_json:
        console.print_json(json.dumps([item.model_dump(by_alias=True, exclude_none=True) for item in items]))
        return
    if not items:
        console.print("[dim]Trash is empty[/dim]")
        return

    table = Table(title=f"{len(items)} Item(s) in Trash")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Trashed at", style="dim")
    table.add_column("Title")
    table.add_column("Size", justify="right")
    for item in items:
        table.add_row(item.original_id[:8], item.trashed_at[:19].replace("T", " "), _short(item.title or "Untitled"), str(item.size or 0))
    console.print(table)


@trash_app.command("stats")
def trash_stats(ctx: typer.Context):
    """Show trash item count, total size and oldest entry."""
    stats = TrashManager(ctx.obj).get_trash_stats()
    console.print(f"Items:      {stats.count}")
    console.print(f"Total size: {stats.total_size} bytes")
    console.print(f"Oldest:     {stats.oldest_trashed_at or '-'}")


@trash_app.command("empty")
def trash_empty(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be purged"),
):
    """Permanently delete everything in the trash."""
    trash = TrashManager(ctx.obj)
    items = trash.list_trash_items()
    if not items:
        console.print("[dim]Trash is already empty[/dim]")
        return

    if dry_run:
        result = trash.empty_trash(dry_run=True)
        console.print(f"Would permanently delete {result.count} item(s)")
        return

    if not force and not typer.confirm(
        f"PERMANENTLY delete all {len(items)} item(s) in trash?", default=False
    ):
        console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(code=1)

    result = trash.empty_trash()
    _print_batch(result, "Permanently deleted")
    if result.failed:
        raise typer.Exit(code=1)


@trash_app.command("cleanup")
def trash_cleanup(
    ctx: typer.Context,
    days: int = typer.Option(None, "--days", help="Retention in days (default: 7)"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be purged"),
):
    """Permanently delete trash items older than the retention window."""
    trash = TrashManager(ctx.obj)
    expired = trash.cleanup_old_items(days, dry_run=True)
    if dry_run:
        console.print(f"Would permanently delete {expired.count} item(s)")
        return
    if not expired.count:
        console.print("[dim]No trash items past the retention window[/dim]")
        return

    if not force and not typer.confirm(
        f"PERMANENTLY delete {expired.count} expired item(s) in trash?", default=False
    ):
        console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(code=1)

    result = trash.cleanup_old_items(days)
    _print_batch(result, "Permanently deleted")
    if result.failed:
        raise typer.Exit(code=1)


@app.command()
def status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Check session health: remaining context and snapshot freshness."""
    health = Guardian(ctx.obj).check_health()

    if as_json:
        console.print_json(health.model_dump_json())
        return

    colors = {"healthy": "green", "warning": "yellow", "danger": "red"}
    color = colors[health.level]
    console.print(f"[{color}]Session health: {health.level}[/{color}]")
    if health.remaining_percent is not None:
        console.print(f"  [dim]Context remaining:[/dim] {health.remaining_percent}%")
    if health.last_snapshot is not None:
        console.print(
            f"  [dim]Last snapshot:[/dim]     {health.last_snapshot.title} "
            f"({health.last_snapshot.age_hours:.1f}h ago)"
        )
    console.print(f"  {health.suggestion}")


@app.command()
def protect(ctx: typer.Context):
    """Create a protective snapshot if the context budget is running out."""
    result = Guardian(ctx.obj).protect()
    if result.action == "snapshot":
        style = "green" if result.success else "red"
        console.print(f"[{style}]{result.message}[/{style}]")
        if not result.success:
            raise typer.Exit(code=1)
    elif result.action == "warn":
        console.print(f"[yellow]{result.message}[/yellow]")
    else:
        console.print(f"[dim]{result.message}[/dim]")


events_app = typer.Typer(help="Event log commands")
app.add_typer(events_app, name="events")


@events_app.command("tail")
def events_tail(
    ctx: typer.Context,
    n: int = typer.Option(20, "--n", help="Number of recent events to display"),
):
    """Display the last N events from the event log."""
    paths = StoragePaths.from_config(ctx.obj)
    events = read_events(paths.events_file, n=n)
    if not events:
        console.print("[dim]No events in log[/dim]")
        return

    table = Table(title=f"Last {len(events)} Event(s)")
    table.add_column("Timestamp (UTC)", style="cyan", no_wrap=True)
    table.add_column("Event Type", style="magenta")
    table.add_column("Snapshot", style="yellow")
    table.add_column("Metadata", style="dim")
    for event in events:
        metadata = str(event.metadata) if event.metadata else ""
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type,
            event.snapshot_id[:8] + "..." if event.snapshot_id else "-",
            _short(metadata, 60),
        )
    console.print(table)


session_app = typer.Typer(help="Assistant session pointer")
app.add_typer(session_app, name="session")


@session_app.command("show")
def session_show(ctx: typer.Context):
    """Print the stored assistant session id."""
    session_id = SnapshotStore(ctx.obj).load_session_id()
    if session_id is None:
        console.print("[dim]No session recorded[/dim]")
        raise typer.Exit(code=1)
    console.print(session_id)


@session_app.command("set")
def session_set(ctx: typer.Context, session_id: str = typer.Argument(..., help="Session id to resume")):
    """Record the assistant session id used to resume conversations."""
    try:
        SnapshotStore(ctx.obj).save_session_id(session_id)
    except KodamaError as e:
        raise _fail(e)
    console.print(f"[green]Session set:[/green] {session_id}")


@app.command()
def tags(ctx: typer.Context):
    """Show tag usage across snapshots."""
    stats = tag_stats(SnapshotStore(ctx.obj).list_snapshots())
    console.print(f"Distinct tags: {stats['total_tags']}")
    for entry in stats["top_tags"]:
        console.print(f"  {entry['tag']:<30} {entry['count']}")


@app.command()
def doctor(ctx: typer.Context):
    """Check storage layout and show the effective configuration."""
    config: KodamaConfig = ctx.obj
    store = SnapshotStore(config)
    paths = store.paths
    trash = TrashManager(config, paths)

    table = Table(title="kodama doctor")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Details", style="dim")

    for name, directory in (("Data directory", paths.data), ("Snapshots", paths.snapshots), ("Trash", paths.trash)):
        ok = directory.is_dir()
        table.add_row(name, "[green]ok[/green]" if ok else "[red]missing[/red]", str(directory))

    table.add_row("Live snapshots", "[green]ok[/green]", str(len(store.live_snapshot_ids())))
    stats = trash.get_trash_stats()
    table.add_row("Trash", "[green]ok[/green]", f"{stats.count} item(s), {stats.total_size} bytes")
    console.print(table)

    console.print("\n[bold]Configuration[/bold]")
    console.print_json(json.dumps(config.summary()))


@app.command()
def version():
    """Show kodama version."""
    from . import __version__
    console.print(f"kodama v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
