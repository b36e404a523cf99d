"""CLI command modules for DockVault."""

from . import (
    archive_commands,
    backup_commands,
    config_commands,
)

__all__ = [
    'archive_commands',
    'backup_commands',
    'config_commands',
]
