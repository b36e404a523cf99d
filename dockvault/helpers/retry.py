################################################################################
# DOCKVAULT
#
# @file:        retry.py
# @module:      dockvault.helpers.retry
# @description: Bounded retries with exponential backoff and phase timeouts.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Backoff sleeps wait on the abort event so shutdown interrupts them
# - Timeouts and integrity errors are never retried
################################################################################

"""Retry and timeout helpers for job phases."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from ..types import RetryPolicy
from .exceptions import (
    AbortError,
    ArchiveError,
    CaptureIntegrityError,
    ContainerRuntimeError,
    PhaseTimeoutError,
)
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE: Tuple[Type[BaseException], ...] = (ContainerRuntimeError, ArchiveError, OSError)
NEVER_RETRY: Tuple[Type[BaseException], ...] = (PhaseTimeoutError, CaptureIntegrityError, AbortError)


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    phase: str,
    abort_event: Optional[threading.Event] = None,
    on_attempt: Optional[Callable[[int], None]] = None,
    retry_on: Tuple[Type[BaseException], ...] = RETRYABLE,
    log_extra: Optional[dict] = None,
) -> T:
    """
    Call ``func`` until it succeeds or the policy's attempts are used up.

    Args:
        func: Zero-argument callable
        policy: Attempt budget and backoff for this phase
        phase: Phase name used in log messages
        abort_event: Set on shutdown; interrupts backoff with AbortError
        on_attempt: Called with the 1-based attempt number before each try
        retry_on: Exception types that trigger another attempt
        log_extra: Logging context

    Returns:
        Whatever ``func`` returns

    Raises:
        AbortError: If aborted before or between attempts
        The last exception once attempts are exhausted
    """
    extra = dict(log_extra or {}, phase=phase)
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        if abort_event is not None and abort_event.is_set():
            raise AbortError(f"{phase} aborted before attempt {attempt}")
        if on_attempt:
            on_attempt(attempt)
        try:
            return func()
        except NEVER_RETRY:
            raise
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{phase} failed after {attempt} attempt(s): {e}", extra=extra)
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{phase} attempt {attempt}/{attempts} failed: {e}; retrying in {delay:g}s",
                extra=extra,
            )
            if abort_event is not None:
                if abort_event.wait(delay):
                    raise AbortError(f"{phase} aborted during backoff") from e
            elif delay > 0:
                time.sleep(delay)

    raise AssertionError("unreachable")


def run_with_timeout(
    func: Callable[..., T],
    timeout: Optional[float],
    phase: str,
    *args: Any,
    cancel: Optional[threading.Event] = None,
) -> T:
    """
    Run ``func`` on a helper thread and give up after ``timeout`` seconds.

    The helper thread cannot be killed; on expiry ``cancel`` is set so
    cooperative code can stop early, and the result is discarded.

    Raises:
        PhaseTimeoutError: If the call did not finish in time
    """
    if not timeout or timeout <= 0:
        return func(*args)

    outcome: dict = {}

    def _target() -> None:
        try:
            outcome["result"] = func(*args)
        except BaseException as e:  # re-raised on the calling thread
            outcome["error"] = e

    worker = threading.Thread(target=_target, name=f"dockvault-{phase}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        if cancel is not None:
            cancel.set()
        raise PhaseTimeoutError(phase, timeout)
    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]
