################################################################################
# DOCKVAULT
#
# @file:        main.py
# @module:      dockvault.cli.main
# @description: Typer-based CLI entry point orchestrating DockVault operations.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Configuration and logging are set up once in the app callback
# - DockVaultError ends the process with a red message and exit code 1
################################################################################

"""
DockVault main CLI

Typer-based CLI following the tool bench pattern:
- Configuration is loaded once at startup
- Commands retrieve tools from context instead of parameters
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer
from rich.markup import escape

from ..commands import archive_commands, backup_commands, config_commands
from ..helpers.config import Config
from ..helpers.constants import VERSION
from ..helpers.exceptions import ConfigError, DockVaultError
from ..helpers.logging import get_logger, setup_logging
from ..helpers.ui_utils import console

app = typer.Typer(
    name="dockvault",
    add_completion=False,
    help="DockVault - label-driven scheduled backups of Docker volumes.",
)
logger = get_logger(__name__)


# -------------------------
# Application Context
# -------------------------

@app.callback()
def initialize_context(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file."
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR); overrides [logging] level."
    ),
    debug: bool = typer.Option(
        False, "--debug", help="Debug logging and full tracebacks."
    ),
):
    """
    Initialize application context before any command runs.
    Sets up logging and loads configuration once.
    """
    ctx.ensure_object(dict)

    cfg = None
    try:
        cfg = Config(config_path)
    except ConfigError as e:
        ctx.obj["config_error"] = str(e)

    level = "DEBUG" if debug else (log_level or (cfg.get('logging', 'level', fallback='INFO') if cfg else 'INFO'))
    if cfg:
        json_setting = str(cfg.get('logging', 'json', fallback='') or '').strip()
        setup_logging(
            level=level,
            log_file=cfg.get('logging', 'file', fallback='') or None,
            json_format=cfg.getboolean('logging', 'json') if json_setting else None,
            max_size_mb=cfg.getint('logging', 'max_size_mb', fallback=100),
            backup_count=cfg.getint('logging', 'backup_count', fallback=5),
        )
    else:
        setup_logging(level=level)

    ctx.obj["config"] = cfg
    ctx.obj["config_path"] = config_path
    ctx.obj["debug"] = debug


# -------------------------
# Commands
# -------------------------

@app.command("version")
def cmd_version():
    """Show DockVault version."""
    console.print(f"[cyan]DockVault[/cyan] v{VERSION}")


backup_commands.register(app)
archive_commands.register(app)
config_commands.register(app)


# -------------------------
# Entrypoint
# -------------------------

def cli_main():
    """
    Entry point for CLI

    This function is called by the console script entry point.
    """
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled by user[/yellow]")
        sys.exit(130)
    except DockVaultError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        if "--debug" in sys.argv:
            raise
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
