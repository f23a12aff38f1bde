"""CLI for running backups and restores by hand.

A thin invoking layer over ``BackupEngine``, like the HTTP handlers that
normally call it.  Connection URLs come from ``DATABASE_URL`` /
``BACKUP_DATABASE_URL`` or db-mirror.toml.

Usage:
    db-mirror backup
    db-mirror restore --yes
    db-mirror init
    db-mirror status
    db-mirror history --limit 10
    db-mirror auto-backup off
    db-mirror health
    db-mirror --config ops/db-mirror.toml --verbose backup

Commands:
    backup       - Replicate every primary table into the backup database
    restore      - Rebuild primary tables from the backup database
    init         - Create missing backup tables (structure only)
    status       - Show the status record
    history      - List recorded backup and restore runs, newest first
    auto-backup  - Turn scheduled automatic backups on or off
    health       - Check that both databases are reachable
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from db_mirror.backup.models import BackupStatus, HistoryEntry, OperationResult
from db_mirror.engine import BackupEngine
from db_mirror.config.loader import load_mirror_config
from db_mirror.errors import ConfigurationError, MirrorError

console = Console()


# ============================================================================
# Helpers
# ============================================================================


def _build_engine(args: argparse.Namespace) -> BackupEngine | None:
    """Load configuration and build the engine, printing config errors."""
    config_path = Path(args.config) if getattr(args, "config", None) else None
    try:
        config = load_mirror_config(config_path)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return None
    return BackupEngine(config)


def _format_time(value) -> str:
    return value.isoformat(timespec="seconds") if value else "never"


def _format_flag(value: bool | None) -> str:
    if value is None:
        return "-"
    return "[green]yes[/green]" if value else "[red]no[/red]"


def _print_result(result: OperationResult) -> int:
    """Print per-table rows and the outcome line; return the exit code."""
    if result.tables:
        table = Table(
            title=f"{result.operation.capitalize()} Tables",
            show_header=True,
            header_style="bold",
        )
        table.add_column("Table")
        table.add_column("Rows", justify="right")
        for report in result.tables:
            table.add_row(report.name, str(report.rows))
        console.print(table)

    duration = result.duration_seconds
    took = f" in {duration:.1f}s" if duration is not None else ""
    if result.success:
        console.print(
            f"[bold green]v[/bold green] {result.operation.capitalize()} complete: "
            f"{len(result.tables)} tables, {result.total_rows} rows{took}."
        )
        return 0

    console.print(f"[bold red]x[/bold red] {result.operation.capitalize()} failed: {result.error}")
    return 1


def _print_status(status: BackupStatus) -> None:
    table = Table(title="Backup Status", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Auto-backup", "enabled" if status.is_auto_backup_enabled else "disabled")
    table.add_row("Last backup", _format_time(status.last_backup_time))
    table.add_row("Last backup succeeded", _format_flag(status.last_backup_success))
    if status.last_backup_error:
        table.add_row("Last backup error", f"[red]{status.last_backup_error}[/red]")
    table.add_row("Backups", str(status.backup_count))
    table.add_row("Last restore", _format_time(status.last_restore_time))
    table.add_row("Last restore succeeded", _format_flag(status.last_restore_success))
    if status.last_restore_error:
        table.add_row("Last restore error", f"[red]{status.last_restore_error}[/red]")
    table.add_row("Restores", str(status.restore_count))

    console.print(table)


def _print_history(entries: list[HistoryEntry]) -> None:
    table = Table(title="Backup History", show_header=True, header_style="bold")
    table.add_column("Finished")
    table.add_column("Operation")
    table.add_column("Succeeded")
    table.add_column("Tables", justify="right")
    table.add_column("Rows", justify="right")
    table.add_column("Error")

    for entry in entries:
        table.add_row(
            _format_time(entry.finished_at or entry.started_at),
            entry.operation,
            _format_flag(entry.success),
            str(entry.tables),
            str(entry.rows),
            f"[red]{entry.error}[/red]" if entry.error else "",
        )
    console.print(table)


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_backup(args: argparse.Namespace) -> int:
    """Async implementation for backup command."""
    engine = _build_engine(args)
    if engine is None:
        return 1
    async with engine:
        console.print("Backing up primary database...", style="dim")
        result = await engine.backup()
    return _print_result(result)


async def _async_restore(args: argparse.Namespace) -> int:
    """Async implementation for restore command.

    Asks for confirmation unless ``--yes`` was given.
    """
    if not args.yes:
        console.print(
            "[bold yellow]This will replace primary tables with the backup copies.[/bold yellow]"
        )
        response = input("Continue? [y/N] ")
        if response.lower() not in ["y", "yes"]:
            console.print("Cancelled.")
            return 0

    engine = _build_engine(args)
    if engine is None:
        return 1
    async with engine:
        console.print("Restoring primary database from backup...", style="dim")
        result = await engine.restore()
    return _print_result(result)


async def _async_init(args: argparse.Namespace) -> int:
    """Async implementation for init command."""
    engine = _build_engine(args)
    if engine is None:
        return 1
    async with engine:
        result = await engine.initialize_backup_database()
    if result.success and not result.tables:
        console.print("[dim]Backup database already initialized; nothing to create.[/dim]")
        return 0
    return _print_result(result)


async def _async_status(args: argparse.Namespace) -> int:
    """Async implementation for status command."""
    engine = _build_engine(args)
    if engine is None:
        return 1
    async with engine:
        try:
            status = await engine.get_status()
        except MirrorError as e:
            console.print(f"[red]Error: {e}[/red]")
            return 1
    _print_status(status)
    if not status.has_backup:
        console.print("[dim]No backup has run yet.[/dim]")
    return 0


async def _async_history(args: argparse.Namespace) -> int:
    """Async implementation for history command."""
    engine = _build_engine(args)
    if engine is None:
        return 1
    async with engine:
        try:
            entries = await engine.get_history(limit=args.limit, page=args.page)
        except (MirrorError, ValueError) as e:
            console.print(f"[red]Error: {e}[/red]")
            return 1
    if not entries:
        console.print("[dim]No runs recorded.[/dim]")
        return 0
    _print_history(entries)
    return 0


async def _async_auto_backup(args: argparse.Namespace) -> int:
    """Async implementation for auto-backup command."""
    enabled = args.state == "on"
    engine = _build_engine(args)
    if engine is None:
        return 1
    async with engine:
        try:
            await engine.set_auto_backup_enabled(enabled)
        except MirrorError as e:
            console.print(f"[red]Error: {e}[/red]")
            return 1
    console.print(
        f"[bold green]v[/bold green] Auto-backup {'enabled' if enabled else 'disabled'}."
    )
    return 0


async def _async_health(args: argparse.Namespace) -> int:
    """Async implementation for health command."""
    engine = _build_engine(args)
    if engine is None:
        return 1
    async with engine:
        health = await engine.check_health()

    table = Table(title="Database Health", show_header=True, header_style="bold")
    table.add_column("Database")
    table.add_column("Reachable")
    for name, ok in health.items():
        table.add_row(name, _format_flag(ok))
    console.print(table)
    return 0 if all(health.values()) else 1


# ============================================================================
# Sync command wrappers
# ============================================================================


def cmd_backup(args: argparse.Namespace) -> int:
    """Run a backup. Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_backup(args))


def cmd_restore(args: argparse.Namespace) -> int:
    """Run a restore. Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_restore(args))


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize the backup database. Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_init(args))


def cmd_status(args: argparse.Namespace) -> int:
    """Show the status record. Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_status(args))


def cmd_history(args: argparse.Namespace) -> int:
    """List run history. Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_history(args))


def cmd_auto_backup(args: argparse.Namespace) -> int:
    """Toggle auto-backup. Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_auto_backup(args))


def cmd_health(args: argparse.Namespace) -> int:
    """Check both databases. Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_health(args))


# ============================================================================
# Main entry point
# ============================================================================


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = argparse.ArgumentParser(
        prog="db-mirror",
        description="Schema-agnostic PostgreSQL backup and restore",
    )

    # Global options
    parser.add_argument(
        "--config",
        default=None,
        help="Path to db-mirror.toml (default: $DB_MIRROR_CONFIG or ./db-mirror.toml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log every step (DEBUG level)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # backup command
    p_backup = subparsers.add_parser(
        "backup",
        help="Replicate every primary table into the backup database",
    )
    p_backup.set_defaults(func=cmd_backup)

    # restore command
    p_restore = subparsers.add_parser(
        "restore",
        help="Rebuild primary tables from the backup database",
    )
    p_restore.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Skip the confirmation prompt",
    )
    p_restore.set_defaults(func=cmd_restore)

    # init command
    p_init = subparsers.add_parser(
        "init",
        help="Create missing backup tables (structure only)",
    )
    p_init.set_defaults(func=cmd_init)

    # status command
    p_status = subparsers.add_parser(
        "status",
        help="Show the backup status record",
    )
    p_status.set_defaults(func=cmd_status)

    # history command
    p_history = subparsers.add_parser(
        "history",
        help="List recorded backup and restore runs, newest first",
    )
    p_history.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Entries per page (default: 20)",
    )
    p_history.add_argument(
        "--page",
        type=int,
        default=1,
        help="Page number, starting at 1 (default: 1)",
    )
    p_history.set_defaults(func=cmd_history)

    # auto-backup command
    p_auto = subparsers.add_parser(
        "auto-backup",
        help="Turn scheduled automatic backups on or off",
    )
    p_auto.add_argument("state", choices=["on", "off"])
    p_auto.set_defaults(func=cmd_auto_backup)

    # health command
    p_health = subparsers.add_parser(
        "health",
        help="Check that both databases are reachable",
    )
    p_health.set_defaults(func=cmd_health)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
