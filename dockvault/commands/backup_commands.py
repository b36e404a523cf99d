"""
Backup commands for DockVault

Daemon, target discovery and foreground backups.
"""

from datetime import datetime, timezone

import typer

from ..helpers.ui_utils import (
    console,
    create_table,
    print_header,
    print_info,
    print_job_record,
    print_success,
    print_warning,
    with_spinner,
)
from ..types import JobOutcome
from ..cli.context import ensure_config, get_orchestrator


def cmd_run(ctx: typer.Context):
    """Run the backup daemon in the foreground."""
    ensure_config(ctx)
    get_orchestrator(ctx).run_forever()


def cmd_targets(ctx: typer.Context):
    """List discovered backup targets, their next run and label errors."""
    orchestrator = get_orchestrator(ctx)
    orchestrator.runtime.ping()
    targets = with_spinner("Discovering containers...", orchestrator.discover)

    print_header("Backup Targets", f"Label prefix: {orchestrator.registry.label_prefix}")
    schedules = orchestrator.scheduler.schedules
    invalid = orchestrator.scheduler.invalid

    if targets:
        table = create_table("Targets", [
            ("Target", "cyan", None),
            ("Container", "white", None),
            ("Schedule", "green", None),
            ("Next run (UTC)", "yellow", None),
            ("Action", "white", None),
            ("Volumes", "white", None),
        ])
        for target in sorted(targets, key=lambda t: t.id):
            schedule = schedules.get(target.id)
            if schedule is not None:
                next_run = schedule.next_fire.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M")
            else:
                next_run = "[red]invalid schedule[/red]"
            table.add_row(
                target.id,
                target.container.name,
                target.schedule,
                next_run,
                target.action.value + (" (dry run)" if target.dry_run else ""),
                ", ".join(f"{v.name}={v.path}" for v in target.volumes),
            )
        console.print(table)
    else:
        print_warning("No backup targets found")

    for target_id, message in sorted(invalid.items()):
        print_warning(f"{target_id}: {message}")
    for key, message in sorted(orchestrator.registry.errors.items()):
        print_warning(f"{key}: {message}")

    print_info(f"Total: {len(targets)} target(s), "
               f"{len(invalid) + len(orchestrator.registry.errors)} with errors")


def cmd_backup(
    ctx: typer.Context,
    target: str,
    dry_run: bool = False,
):
    """Run one backup of TARGET in the foreground."""
    orchestrator = get_orchestrator(ctx)
    try:
        orchestrator.runtime.ping()
        started = datetime.now(timezone.utc)
        print_info(f"Backing up {target} ({'dry run' if dry_run else 'live'})...")
        record = orchestrator.backup_now(target, dry_run=dry_run)
    finally:
        orchestrator.shutdown()

    print_job_record(record)
    if record.outcome is not JobOutcome.SUCCEEDED:
        raise typer.Exit(code=1)
    elapsed = (datetime.now(timezone.utc) - started).total_seconds()
    print_success(f"Backup of {target} finished in {elapsed:.1f}s")


def register(app: typer.Typer):
    """Register backup commands to the main app"""

    @app.command("run")
    def _run_cmd(ctx: typer.Context):
        """Run the scheduling daemon until SIGTERM/SIGINT."""
        cmd_run(ctx)

    @app.command("targets")
    def _targets_cmd(ctx: typer.Context):
        """List discovered backup targets."""
        cmd_targets(ctx)

    @app.command("backup")
    def _backup_cmd(
        ctx: typer.Context,
        target: str = typer.Argument(..., help="Target id (label name or container name)."),
        dry_run: bool = typer.Option(False, "--dry-run", help="Build the archive but do not store it."),
    ):
        """Run one backup now and print the job record."""
        cmd_backup(ctx, target, dry_run=dry_run)
