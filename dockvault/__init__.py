################################################################################
# DOCKVAULT
#
# @file:        __init__.py
# @module:      dockvault
# @description: Exposes version, configuration and the core orchestrator.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Sets __version__ from constants.VERSION for tooling introspection
# - Keeps logging helpers accessible via the package namespace
################################################################################

"""
DockVault: label-driven, scheduled backups of Docker container volumes.

Containers opt in with ``dockvault.*`` labels; DockVault quiesces them,
captures their volumes and stores verified tar archives.
"""

from .helpers.constants import VERSION

__version__ = VERSION

from .helpers.config import Config
from .helpers.logging import get_logger, setup_logging
from .types import BackupTarget, ContainerRef, Job, JobOutcome, JobRecord, JobState
from .cores.orchestrator import Orchestrator

__all__ = [
    "VERSION",
    "Config",
    "Orchestrator",
    "BackupTarget",
    "ContainerRef",
    "Job",
    "JobOutcome",
    "JobRecord",
    "JobState",
    "get_logger",
    "setup_logging",
]
