"""
Tool bench for CLI commands.

Configuration is loaded once in the app callback; commands fetch what they
need from the Typer context instead of building it themselves.
"""

from typing import Optional

import typer

from ..cores.orchestrator import Orchestrator
from ..cores.storage import FilesystemStorageSink
from ..helpers.config import Config
from ..helpers.ui_utils import print_error, print_info


def get_config(ctx: typer.Context) -> Optional[Config]:
    """Get config from the tool bench."""
    return ctx.obj.get("config")


def ensure_config(ctx: typer.Context) -> Config:
    """Ensure config was loaded or exit."""
    cfg = get_config(ctx)
    if not cfg:
        error = ctx.obj.get("config_error")
        print_error(f"Configuration could not be loaded: {error}" if error else "No configuration found")
        print_info("Run: dockvault config init")
        raise typer.Exit(code=1)
    return cfg


def get_orchestrator(ctx: typer.Context) -> Orchestrator:
    """Get or create the orchestrator from the tool bench."""
    if "orchestrator" not in ctx.obj:
        ctx.obj["orchestrator"] = ctx.obj.get("orchestrator_factory", Orchestrator.from_config)(ensure_config(ctx))
    return ctx.obj["orchestrator"]


def get_sink(ctx: typer.Context) -> FilesystemStorageSink:
    if "sink" not in ctx.obj:
        ctx.obj["sink"] = FilesystemStorageSink(ensure_config(ctx).archive_base)
    return ctx.obj["sink"]
