"""Archive listing, retention and verification commands."""

from typing import Dict, List, Optional

import typer

from ..cores.archive_builder import ArchiveBuilder
from ..helpers.exceptions import ConfigError, ContainerRuntimeError
from ..helpers.logging import get_logger
from ..helpers.ui_utils import (
    console,
    create_table,
    format_size,
    print_error,
    print_header,
    print_info,
    print_success,
    print_warning,
    prompt_confirm,
)
from ..types import RetentionPolicy
from ..cli.context import ensure_config, get_orchestrator, get_sink

logger = get_logger(__name__)


# -------------------------
# Commands
# -------------------------

def cmd_archives(ctx: typer.Context, target: str):
    """List stored archives of TARGET, newest first."""
    sink = get_sink(ctx)
    archives = sink.list(target)
    if not archives:
        print_warning(f"No archives found for {target} in {sink.base_path}")
        return

    table = create_table(f"Archives of {target}", [
        ("Archive", "cyan", None),
        ("Created (UTC)", "yellow", None),
        ("Size", "green", None),
        ("Location", "white", None),
    ])
    for archive in archives:
        table.add_row(
            archive.name,
            archive.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            format_size(archive.size),
            archive.location,
        )
    console.print(table)
    print_info(f"Total: {len(archives)} archive(s), {format_size(sum(a.size for a in archives))}")


def _retention_policies(ctx: typer.Context, target_ids: List[str]) -> Dict[str, RetentionPolicy]:
    """Retention per target: label overrides when the runtime is reachable, config defaults otherwise."""
    cfg = ensure_config(ctx)
    default = cfg.target_defaults().retention()
    policies = {target_id: default for target_id in target_ids}
    try:
        orchestrator = get_orchestrator(ctx)
        orchestrator.runtime.ping()
        for target in orchestrator.discover():
            if target.id in policies:
                policies[target.id] = target.retention
    except ContainerRuntimeError as e:
        print_warning(f"Container runtime unavailable, using configured retention defaults ({e})")
    return policies


def cmd_sweep(
    ctx: typer.Context,
    target: Optional[str] = None,
    keep_last: Optional[int] = None,
    max_age_days: Optional[int] = None,
    yes: bool = False,
):
    """Apply retention to one target or to every target with archives."""
    sink = get_sink(ctx)
    target_ids = [target] if target else sink.list_targets()
    if not target_ids:
        print_warning(f"No archives found in {sink.base_path}")
        return

    if keep_last is not None or max_age_days is not None:
        override = RetentionPolicy(keep_last=keep_last, max_age_days=max_age_days)
        if (keep_last is not None and keep_last < 1) or (max_age_days is not None and max_age_days < 1):
            raise ConfigError("--keep-last and --max-age-days must be at least 1")
        policies = {target_id: override for target_id in target_ids}
    else:
        policies = _retention_policies(ctx, target_ids)

    print_header("Retention Sweep", f"{len(target_ids)} target(s) in {sink.base_path}")
    if not yes and not prompt_confirm("Delete archives outside the retention policy?"):
        print_info("Aborted.")
        raise typer.Exit(code=0)

    builder = ArchiveBuilder(sink)
    total = 0
    for target_id in target_ids:
        policy = policies[target_id]
        if not policy.enabled:
            print_info(f"{target_id}: no retention policy, skipped")
            continue
        deleted = builder.sweep(target_id, policy)
        total += len(deleted)
        if deleted:
            print_success(f"{target_id}: removed {len(deleted)} archive(s)")
        else:
            print_info(f"{target_id}: nothing to remove")
    print_info(f"Total removed: {total}")


def cmd_verify(ctx: typer.Context, location: str):
    """Check a stored archive's manifest and checksums."""
    sink = get_sink(ctx)
    problems = ArchiveBuilder(sink).verify(location)
    if problems:
        for problem in problems:
            print_error(problem)
        print_error(f"Archive {location} is damaged ({len(problems)} problem(s))")
        raise typer.Exit(code=1)
    print_success(f"Archive {location} is intact")


def register(app: typer.Typer):
    """Register all archive commands."""

    @app.command("archives")
    def _archives_cmd(
        ctx: typer.Context,
        target: str = typer.Argument(..., help="Target id."),
    ):
        """List stored archives of a target."""
        cmd_archives(ctx, target)

    @app.command("sweep")
    def _sweep_cmd(
        ctx: typer.Context,
        target: Optional[str] = typer.Argument(None, help="Target id; all targets when omitted."),
        keep_last: Optional[int] = typer.Option(None, "--keep-last", help="Override: archives to keep."),
        max_age_days: Optional[int] = typer.Option(None, "--max-age-days", help="Override: maximum age."),
        yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    ):
        """Delete archives the retention policy no longer covers."""
        cmd_sweep(ctx, target, keep_last, max_age_days, yes)

    @app.command("verify")
    def _verify_cmd(
        ctx: typer.Context,
        location: str = typer.Argument(..., help="Archive location as shown by 'dockvault archives'."),
    ):
        """Verify a stored archive."""
        cmd_verify(ctx, location)
