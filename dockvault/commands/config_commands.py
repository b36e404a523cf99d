"""Configuration management commands."""

from pathlib import Path
from typing import Optional

import typer
from rich.markup import escape

from ..cores.notification_manager import NotificationManager
from ..cores.scheduler import Scheduler
from ..helpers import create_default_config
from ..helpers.exceptions import ConfigError
from ..helpers.ui_utils import (
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_success,
    print_warning,
)
from ..cli.context import ensure_config


# -------------------------
# Commands
# -------------------------

def cmd_show(ctx: typer.Context):
    """Show current configuration with secrets masked."""
    cfg = ensure_config(ctx)
    source = str(cfg.config_file) if cfg.config_file.exists() else f"{cfg.config_file} (not found, built-in defaults)"
    print_header("DockVault Configuration", source)

    table = create_table("", [("Section", "cyan", None), ("Option", "white", None), ("Value", "green", None)])
    current = None
    for section, option, value in cfg.items():
        table.add_row(section if section != current else "", option, escape(value))
        current = section
    console.print(table)


def cmd_validate(ctx: typer.Context):
    """Validate configuration values; exits 1 on problems."""
    cfg = ensure_config(ctx)
    errors = list(cfg.validate())
    try:
        defaults = cfg.target_defaults()
        Scheduler.validate_expression(defaults.schedule)
    except ConfigError as e:
        errors.append(str(e))

    if errors:
        for error in errors:
            print_error(error)
        print_error(f"{len(errors)} problem(s) in {cfg.config_file}")
        raise typer.Exit(code=1)
    print_success(f"Configuration {cfg.config_file} is valid")


def cmd_init(path: Optional[Path] = None, force: bool = False):
    """Write the built-in defaults to a new config file."""
    target = Path(path).expanduser() if path else None
    if target is not None and target.exists() and not force:
        print_warning(f"Config already exists at: {target}")
        print_info("Use --force to overwrite it")
        raise typer.Exit(code=1)
    created = create_default_config(target, force=force)
    print_success(f"Config created at: {created}")


def cmd_test_notification(ctx: typer.Context):
    """Send a test message to the configured notification URLs."""
    cfg = ensure_config(ctx)
    manager = NotificationManager(cfg)
    if not manager.enabled:
        print_warning("Notifications are disabled ([notifications] enabled = false); sending anyway")
    if manager.send_test():
        print_success("Test notification sent")
    else:
        print_error("Test notification failed, see log output")
        raise typer.Exit(code=1)


def register(app: typer.Typer):
    """Register all configuration commands."""
    config_app = typer.Typer(help="Show, validate and create the configuration.")

    @config_app.command("show")
    def _show_cmd(ctx: typer.Context):
        """Show current configuration."""
        cmd_show(ctx)

    @config_app.command("validate")
    def _validate_cmd(ctx: typer.Context):
        """Validate the configuration."""
        cmd_validate(ctx)

    @config_app.command("init")
    def _init_cmd(
        path: Optional[Path] = typer.Option(None, "--path", help="Custom config path"),
        force: bool = typer.Option(False, "--force", "-f", help="Overwrite existing config"),
    ):
        """Create a new configuration file from the defaults."""
        cmd_init(path, force)

    @config_app.command("test-notification")
    def _test_notification_cmd(ctx: typer.Context):
        """Send a test notification."""
        cmd_test_notification(ctx)

    app.add_typer(config_app, name="config")
