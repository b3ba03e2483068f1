"""
CLI interface for the knowledge catalog.

Usage:
    shelf sort
    shelf consolidate todos --project web-app
    shelf storage flag sessions
    shelf storage approve <request-id> --dev alice
    shelf serve
"""

import json
import os
import signal
import threading
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from .archiver import Archiver
from .backend import create_store
from .config import ShelfConfig, get_store_path, load_or_create_config
from .consolidation import Consolidator
from .duplicates import DuplicateDetector
from .errors import PurgeError
from .logging_config import (
    configure_ops_log, configure_quiet_mode, configure_service_logging,
    enable_debug_mode,
)
from .phases import PhaseClassifier
from .projects import ProjectDetector, ProjectDirectory, get_parent_id
from .protocol import StoreProtocol
from .retention import RetentionManager
from .router import ExtractionRouter, LegacyRouter
from .scheduler import CycleGuard, PollingLoop
from .status import StatusUpdater
from .types import DESTINATION_TABLES


# Quiet by default; SHELF_VERBOSE=1 enables debug logging
if os.environ.get("SHELF_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"shelf {version('shelf-catalog')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="shelf",
    help="Sort, deduplicate and archive extracted knowledge.",
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
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="SHELF_STORE_PATH",
        help="Path to the store directory (default: ~/.shelf/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Sort, deduplicate and archive extracted knowledge."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _open() -> tuple[ShelfConfig, StoreProtocol]:
    """Load config and open the configured store; exits on bad config."""
    path = get_store_path(_store_override)
    try:
        config = load_or_create_config(path)
        store = create_store(config)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    configure_ops_log(path)
    return config, store


def _plain(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def _emit(data: Any, text: str) -> None:
    """Print JSON when --json is set, otherwise the human-readable text."""
    if _json_output:
        typer.echo(json.dumps(_plain(data), indent=2, ensure_ascii=False))
    else:
        typer.echo(text)


def _check_table(table: str) -> None:
    if table not in DESTINATION_TABLES:
        typer.echo(
            f"Error: unknown table {table!r}. Choose from: {', '.join(DESTINATION_TABLES)}",
            err=True,
        )
        raise typer.Exit(1)


def _router(config: ShelfConfig, store: StoreProtocol, legacy: bool) -> ExtractionRouter:
    guard = CycleGuard("router", config.router.cycle_timeout)
    if legacy:
        detector = ProjectDetector(ProjectDirectory(store))
        return LegacyRouter(
            store, detector=detector, dedup_window=config.router.dedup_window, guard=guard,
        )
    return ExtractionRouter(store, dedup_window=config.router.dedup_window, guard=guard)


def _archiver(config: ShelfConfig, store: StoreProtocol) -> Archiver:
    return Archiver(
        store,
        clean_after_hours=config.archiver.clean_after_hours,
        archive_after_hours=config.archiver.archive_after_hours,
        batch_size=config.archiver.batch_size,
        guard=CycleGuard("archiver", config.archiver.cycle_timeout),
    )


ProjectOption = Annotated[
    Optional[str],
    typer.Option("--project", "-p", help="Limit to one project id"),
]


# -----------------------------------------------------------------------------
# Sorting and cleanup
# -----------------------------------------------------------------------------

@app.command()
def sort(
    limit: Annotated[int, typer.Option(
        "--limit", "-n", help="Maximum staging rows to route"
    )] = 0,
    legacy: Annotated[bool, typer.Option(
        "--legacy", help="Detect projects from content and match on title prefixes"
    )] = False,
):
    """Route pending extractions into their destination tables."""
    config, store = _open()
    stats = _router(config, store, legacy).process_batch(limit or config.router.batch_size)
    store.close()
    if stats.skipped:
        _emit(stats.to_dict(), "Router already running, skipped.")
        return
    by_table = ", ".join(f"{t}: {n}" for t, n in sorted(stats.by_table.items()))
    _emit(
        stats.to_dict(),
        f"{stats.processed} processed, {stats.duplicates} duplicates, {stats.errors} errors"
        + (f" ({by_table})" if by_table else ""),
    )


@app.command()
def duplicates(
    table: Annotated[str, typer.Argument(help="Destination table")],
    project: ProjectOption = None,
):
    """List duplicate groups without changing anything."""
    _check_table(table)
    config, store = _open()
    detector = DuplicateDetector(store, threshold=config.duplicate_threshold)
    if project:
        groups = detector.find_duplicates(table, project).groups
    else:
        groups = detector.find_all_duplicates(table)
    store.close()

    lines = []
    for i, group in enumerate(groups, start=1):
        lines.append(f"Group {i}:")
        lines.extend(f"  {r.id}  {r.title}" for r in group)
    _emit(groups, "\n".join(lines) if lines else "No duplicates found.")


@app.command()
def consolidate(
    table: Annotated[str, typer.Argument(help="Destination table")],
    project: ProjectOption = None,
):
    """Merge duplicate groups into their oldest record."""
    _check_table(table)
    config, store = _open()
    consolidator = Consolidator(
        store, DuplicateDetector(store, threshold=config.duplicate_threshold),
    )
    if project:
        summary = consolidator.consolidate_table(table, project)
        result = asdict(summary)
        text = f"{summary.consolidated} records consolidated in {summary.groups} groups"
        if summary.failed_groups:
            text += f", {summary.failed_groups} groups failed"
    else:
        result = consolidator.consolidate_all(table)
        text = (f"{result['total_consolidated']} records consolidated "
                f"across {result['projects_processed']} projects")
    store.close()
    _emit(result, text)


@app.command("assign-phases")
def assign_phases(
    project: Annotated[str, typer.Argument(help="Project id")],
):
    """File a project's unphased todos and bugs under its parent's phases."""
    config, store = _open()
    result = PhaseClassifier(store, min_score=config.phase_min_score).assign_all_phases(project)
    store.close()
    if result.get("no_parent"):
        _emit(result, f"Project {project} has no parent with phases.")
        return
    _emit(result, f"Assigned {result['todos']} todos and {result['bugs']} bugs.")


@app.command("update-status")
def update_status(
    project: Annotated[str, typer.Argument(help="Project id")],
):
    """Normalize done-like statuses for a project's todos and bugs."""
    _, store = _open()
    result = StatusUpdater(store).update_statuses(project)
    store.close()
    _emit(result, f"Updated {result['todos_updated']} todos and {result['bugs_updated']} bugs.")


@app.command("rollup-phases")
def rollup_phases(
    parent: Annotated[str, typer.Argument(help="Project id (children resolve to their parent)")],
):
    """Complete phase items whose related todos and bugs are all done."""
    _, store = _open()
    parent_id = get_parent_id(store, parent) or parent
    result = StatusUpdater(store).update_phase_item_statuses(parent_id)
    store.close()
    _emit(result, f"Completed {result['updated']} phase items.")


@app.command()
def archive():
    """Run one archiver cycle (clean, then archive)."""
    config, store = _open()
    stats = _archiver(config, store).run_cycle()
    store.close()
    _emit(stats.to_dict(), f"{stats.cleaned} cleaned, {stats.archived} archived, {stats.errors} errors")


@app.command("archive-stats")
def archive_stats():
    """Show session counts per lifecycle status."""
    config, store = _open()
    counts = _archiver(config, store).stats()
    store.close()
    _emit(counts, "\n".join(f"{status:<10} {n}" for status, n in counts.items()))


@app.command()
def serve():
    """Run the router and archiver loops until interrupted."""
    configure_service_logging()
    config, store = _open()
    router = _router(config, store, legacy=False)
    loops = [
        PollingLoop(
            "router",
            lambda: router.process_batch(config.router.batch_size),
            config.router.interval_seconds,
        ),
        PollingLoop("archiver", _archiver(config, store).run_cycle,
                    config.archiver.interval_seconds),
    ]
    stopped = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stopped.set())
    for loop in loops:
        loop.start()
    typer.echo("Serving; Ctrl-C to stop.", err=True)
    try:
        stopped.wait()
    except KeyboardInterrupt:
        pass
    finally:
        for loop in loops:
            loop.stop(timeout=30)
        store.close()


# -----------------------------------------------------------------------------
# Storage retention
# -----------------------------------------------------------------------------

storage_app = typer.Typer(
    name="storage",
    help="Storage usage and approval-gated purges.",
    rich_markup_mode=None,
)
app.add_typer(storage_app)


def _retention(config: ShelfConfig, store: StoreProtocol) -> RetentionManager:
    return RetentionManager(store, config.retention)


@storage_app.command("stats")
def storage_stats():
    """Row counts and stale rows per monitored table."""
    config, store = _open()
    report = _retention(config, store).scan()
    store.close()
    lines = [f"{'table':<12} {'total':>8} {'stale':>8}  retention"]
    for table, usage in report.tables.items():
        days = f"{usage.retention_days}d" if usage.retention_days else "exempt"
        lines.append(f"{table:<12} {usage.total:>8} {usage.stale:>8}  {days}")
    lines.append(f"{report.total_rows} rows, {report.total_stale} stale, "
                 f"{report.flagged} pending purge requests")
    _emit(report, "\n".join(lines))


@storage_app.command("flag")
def storage_flag(
    tables: Annotated[Optional[list[str]], typer.Argument(
        help="Tables to flag (default: sessions, messages, knowledge)"
    )] = None,
    reason: Annotated[Optional[str], typer.Option("--reason", help="Reason to record")] = None,
    project: ProjectOption = None,
):
    """Flag stale rows for purge. Deletes nothing."""
    config, store = _open()
    flagged = _retention(config, store).flag_for_purge(tables or None, reason, project)
    store.close()
    if not flagged:
        _emit(flagged, "Nothing stale to flag.")
        return
    lines = [f"{f['request_id']}  {f['table']}: {f['count']} rows" for f in flagged]
    lines.append("Review with: shelf storage approve <request-id> --dev <name>")
    _emit(flagged, "\n".join(lines))


@storage_app.command("pending")
def storage_pending(project: ProjectOption = None):
    """List purge requests awaiting review."""
    config, store = _open()
    requests = _retention(config, store).pending(project)
    store.close()
    lines = [
        f"{r.id}  {r.table_name}: {r.record_count} rows  ({r.reason})" for r in requests
    ]
    _emit(requests, "\n".join(lines) if lines else "No pending purge requests.")


DevOption = Annotated[
    str,
    typer.Option("--dev", "-d", help="Who is reviewing (required)"),
]


def _review(request_ids: list[str], dev: str, approve: bool) -> None:
    config, store = _open()
    manager = _retention(config, store)
    try:
        if len(request_ids) == 1:
            result: Any = manager.review(request_ids[0], dev, approve)
            text = result["message"]
            if approve:
                text += f": {result['deleted']} rows deleted from {result['table']}"
        else:
            result = manager.bulk_review(request_ids, dev, approve)
            text = "\n".join(f"{r['request_id']}  {r['status']}" for r in result)
    except PurgeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        store.close()
    _emit(result, text)


@storage_app.command("approve")
def storage_approve(
    request_ids: Annotated[list[str], typer.Argument(help="Purge request id(s)")],
    dev: DevOption = "",
):
    """Approve purge requests and delete the captured rows."""
    _review(request_ids, dev, approve=True)


@storage_app.command("reject")
def storage_reject(
    request_ids: Annotated[list[str], typer.Argument(help="Purge request id(s)")],
    dev: DevOption = "",
):
    """Reject purge requests. Deletes nothing."""
    _review(request_ids, dev, approve=False)


@storage_app.command("history")
def storage_history(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum requests")] = 50,
):
    """Reviewed purge requests, newest first."""
    config, store = _open()
    requests = _retention(config, store).history(limit)
    store.close()
    lines = [
        f"{r.id}  {r.status:<8} {r.table_name}: {r.record_count} rows  by {r.reviewed_by}"
        for r in requests
    ]
    _emit(requests, "\n".join(lines) if lines else "No reviewed purge requests.")


@storage_app.command("old")
def storage_old(
    table: Annotated[str, typer.Argument(help="Table to inspect")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum rows")] = 10,
):
    """Show the oldest rows of a table."""
    config, store = _open()
    rows = _retention(config, store).oldest(table, limit)
    store.close()
    _emit(rows, "\n".join(f"{r['id']}  {r['created_at']}" for r in rows) or "No rows.")


@storage_app.command("retention")
def storage_retention():
    """Show retention windows in days."""
    config, store = _open()
    retention = _retention(config, store).retention
    store.close()
    _emit(retention, "\n".join(
        f"{table:<12} {days if days else 'exempt'}" for table, days in retention.items()
    ))


# -----------------------------------------------------------------------------
# Entry point
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
        from .errors import log_exception
        log_path = log_exception(e, context="shelf CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
