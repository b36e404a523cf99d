################################################################################
# DOCKVAULT
#
# @file:        exceptions.py
# @module:      dockvault.helpers.exceptions
# @description: Error taxonomy shared by the orchestration core.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - ConfigError isolates a single target, never the whole process
# - ContainerRuntimeError carries target/operation/cause for retry decisions
# - CaptureIntegrityError is never retried silently
################################################################################

"""Exceptions raised by DockVault."""

from __future__ import annotations

from typing import Optional


class DockVaultError(Exception):
    """Base class for all DockVault errors."""


class ConfigError(DockVaultError):
    """Invalid configuration, malformed target labels or a bad cron expression."""

    def __init__(self, message: str, target: Optional[str] = None):
        self.target = target
        if target:
            message = f"target '{target}': {message}"
        super().__init__(message)


class ContainerRuntimeError(DockVaultError):
    """A call against the container runtime failed."""

    def __init__(self, operation: str, cause: object = None, target: Optional[str] = None):
        self.operation = operation
        self.cause = cause
        self.target = target
        where = f" on '{target}'" if target else ""
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} failed{where}{detail}")


class RuntimeUnavailableError(ContainerRuntimeError):
    """The runtime could not be reached at all."""


class HookFailedError(ContainerRuntimeError):
    """A hook command ran but its exit code was rejected."""

    def __init__(self, operation: str, exit_code: int, output: str = "", target: Optional[str] = None):
        self.exit_code = exit_code
        self.output = output
        super().__init__(operation, f"exit code {exit_code}", target=target)


class CaptureIntegrityError(DockVaultError):
    """Captured bytes no longer match their recorded size or checksum."""


class ArchiveError(DockVaultError):
    """Building or storing an archive failed."""


class AbortError(DockVaultError):
    """The job was cancelled because the process is shutting down."""


class PhaseTimeoutError(DockVaultError):
    """A job phase exceeded its configured timeout."""

    def __init__(self, phase: str, timeout: float):
        self.phase = phase
        self.timeout = timeout
        super().__init__(f"phase '{phase}' timed out after {timeout:g}s")


class IllegalTransitionError(DockVaultError):
    """The job state machine attempted a transition outside its table."""


class LockHeldError(DockVaultError):
    """Another DockVault process holds the lock."""
