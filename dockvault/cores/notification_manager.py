################################################################################
# DOCKVAULT
#
# @file:        notification_manager.py
# @module:      dockvault.cores.notification_manager
# @description: Job success/failure notifications through Apprise.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Fire-and-forget: a slow or broken endpoint never blocks or fails a job
# - URLs may reference environment variables as ${NAME}
################################################################################

"""Notifications for finished backup jobs."""

from __future__ import annotations

import concurrent.futures
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..helpers.constants import NOTIFICATION_TIMEOUT
from ..helpers.logging import get_logger
from ..types import JobOutcome, JobRecord

logger = get_logger(__name__)

_ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


@dataclass
class JobStats:
    """What a notification reports about one job."""

    target: str
    outcome: str
    duration_seconds: float
    volumes_captured: int = 0
    job_id: str = ""
    archive_name: Optional[str] = None
    failed_phase: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome == JobOutcome.SUCCEEDED.value

    @classmethod
    def from_record(cls, record: JobRecord) -> JobStats:
        errors = []
        if record.error:
            errors.append(f"{record.error.type}: {record.error.message}")
        if record.resume_error and (not record.error or record.resume_error != record.error.message):
            errors.append(f"resume: {record.resume_error}")
        return cls(
            target=record.target_id,
            outcome=record.outcome.value if record.outcome else record.state.value,
            duration_seconds=record.duration_seconds,
            volumes_captured=sum(1 for c in record.captures if c.get("success")),
            job_id=record.job_id,
            archive_name=record.archive_name,
            failed_phase=record.error.phase if record.error else None,
            errors=errors,
        )


class NotificationManager:
    """
    Sends job results to the configured Apprise URLs.
    """

    TIMEOUT_SECONDS = NOTIFICATION_TIMEOUT
    MAX_ERRORS_SHOWN = 3

    def __init__(self, config):
        self.config = config
        self.enabled = bool(config.getboolean("notifications", "enabled", fallback=False))
        self.on_success = bool(config.getboolean("notifications", "on_success", fallback=False))
        self.on_failure = bool(config.getboolean("notifications", "on_failure", fallback=True))
        self.timeout = float(config.get("notifications", "timeout", fallback=None) or self.TIMEOUT_SECONDS)

    # --------------- Public API ---------------

    def notify(self, record: JobRecord) -> bool:
        """Send the message matching the job's outcome."""
        if not self.enabled:
            return True
        stats = JobStats.from_record(record)
        if stats.success:
            return self.send_success(stats)
        return self.send_failure(stats)

    def send_success(self, stats: JobStats) -> bool:
        if not self.on_success:
            logger.debug("Success notifications disabled")
            return True
        title, body = self._render_success_message(stats)
        return self._send_notification(title, body)

    def send_failure(self, stats: JobStats) -> bool:
        if not self.on_failure:
            logger.debug("Failure notifications disabled")
            return True
        title, body = self._render_failure_message(stats)
        return self._send_notification(title, body)

    def send_test(self) -> bool:
        """Send a test message regardless of the enabled flag."""
        return self._send_notification(
            "DockVault: test notification",
            "If you can read this, notifications are configured correctly.",
        )

    # --------------- Rendering ---------------

    def _render_success_message(self, stats: JobStats) -> Tuple[str, str]:
        title = f"DockVault OK: {stats.target}"
        lines = [
            f"Target: {stats.target}",
            "Status: SUCCESS",
            f"Volumes: {stats.volumes_captured}",
            f"Duration: {stats.duration_seconds:.1f}s",
        ]
        if stats.archive_name:
            lines.append(f"Archive: {stats.archive_name}")
        if stats.job_id:
            lines.append(f"Job: {stats.job_id[:8]}")
        return title, "\n".join(lines)

    def _render_failure_message(self, stats: JobStats) -> Tuple[str, str]:
        title = f"DockVault {stats.outcome.upper()}: {stats.target}"
        lines = [
            f"Target: {stats.target}",
            f"Status: {stats.outcome.upper()}",
        ]
        if stats.failed_phase:
            lines.append(f"Phase: {stats.failed_phase}")
        lines.append(f"Duration: {stats.duration_seconds:.1f}s")
        if stats.job_id:
            lines.append(f"Job: {stats.job_id[:8]}")
        if stats.errors:
            lines.append("Errors:")
            for error in stats.errors[:self.MAX_ERRORS_SHOWN]:
                lines.append(f"  - {error}")
            hidden = len(stats.errors) - self.MAX_ERRORS_SHOWN
            if hidden > 0:
                lines.append(f"  (+{hidden} more)")
        return title, "\n".join(lines)

    # --------------- Sending ---------------

    def _resolve_env_vars(self, value: str) -> str:
        """Replace ${NAME} with the environment value; unknown names stay as is."""
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)

    def _urls(self) -> List[str]:
        raw = self.config.get("notifications", "urls", fallback="") or ""
        urls = [self._resolve_env_vars(u.strip()) for u in re.split(r"[,\n]", raw)]
        return [u for u in urls if u]

    def _send_notification(self, title: str, body: str) -> bool:
        urls = self._urls()
        if not urls:
            logger.warning("No notification URLs configured")
            return False

        def _do_send() -> bool:
            import apprise

            client = apprise.Apprise()
            for url in urls:
                client.add(url)
            return bool(client.notify(title=title, body=body))

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="dockvault-notify")
        try:
            future = executor.submit(_do_send)
            sent = future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            logger.warning(f"Notification timed out after {self.timeout:g}s")
            return False
        except Exception as e:
            logger.error(f"Notification failed: {e}")
            return False
        finally:
            executor.shutdown(wait=False)

        if not sent:
            logger.warning("Notification was not delivered")
        return sent
