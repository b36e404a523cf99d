################################################################################
# DOCKVAULT
#
# @file:        scheduler.py
# @module:      dockvault.cores.scheduler
# @description: Cron evaluation and due-event computation per backup target.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Next fire is always recomputed from the cron expression, never drifted
# - Missed fires collapse into a single event; no catch-up after a restart
# - An invalid expression parks its target in `invalid`, others keep firing
################################################################################

"""
Scheduler for DockVault.

Cron expressions have five fields, or six with seconds as the last field.
Evaluation happens in the configured timezone; all returned times are UTC.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from croniter import croniter

from ..helpers.exceptions import ConfigError
from ..helpers.logging import get_logger
from ..types import BackupTarget, Schedule

logger = get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Scheduler:
    """
    Keeps one Schedule per target and reports which ones are due.

    Only the scheduling loop calls ``sync`` and ``next_events``; the lock
    keeps read access from the CLI consistent.
    """

    def __init__(self, tz: str = "UTC"):
        try:
            self.tz = ZoneInfo(tz)
        except (KeyError, ValueError) as e:
            raise ConfigError(f"unknown timezone {tz!r}: {e}")
        self._lock = threading.Lock()
        self._schedules: Dict[str, Schedule] = {}
        self._targets: Dict[str, BackupTarget] = {}
        self._invalid: Dict[str, Tuple[str, str]] = {}

    @property
    def invalid(self) -> Dict[str, str]:
        """Target id to error message for unparseable expressions."""
        with self._lock:
            return {target_id: message for target_id, (_expr, message) in self._invalid.items()}

    @property
    def schedules(self) -> Dict[str, Schedule]:
        with self._lock:
            return {k: Schedule(v.target_id, v.expression, v.next_fire, v.last_fire)
                    for k, v in self._schedules.items()}

    @staticmethod
    def validate_expression(expression: str) -> None:
        """
        Raises:
            ConfigError: If the expression is not a 5 or 6 field cron expression
        """
        expression = (expression or "").strip()
        fields = expression.split()
        if not expression.startswith("@") and len(fields) not in (5, 6):
            raise ConfigError(f"cron expression {expression!r} must have 5 or 6 fields, got {len(fields)}")
        if not croniter.is_valid(expression):
            raise ConfigError(f"invalid cron expression {expression!r}")

    def next_fire(self, expression: str, after: datetime) -> datetime:
        """First fire time of ``expression`` strictly after ``after`` (UTC)."""
        after_local = _as_utc(after).astimezone(self.tz)
        nxt = croniter(expression.strip(), after_local).get_next(datetime)
        if nxt.tzinfo is None:
            nxt = nxt.replace(tzinfo=self.tz)
        return nxt.astimezone(timezone.utc)

    def sync(self, targets: Iterable[BackupTarget], now: datetime) -> None:
        """
        Align schedules with the current target set.

        New targets get a fresh schedule, removed ones are dropped and a
        changed expression is recomputed from ``now``.
        """
        now = _as_utc(now)
        targets = {t.id: t for t in targets}

        with self._lock:
            for target_id in set(self._targets) - set(targets):
                self._schedules.pop(target_id, None)
                self._invalid.pop(target_id, None)
                self._targets.pop(target_id, None)
                logger.debug(f"Schedule dropped for {target_id}", extra={'target': target_id})

            for target_id, target in targets.items():
                self._targets[target_id] = target
                expression = target.schedule.strip()
                current = self._schedules.get(target_id)
                if current is not None and current.expression == expression:
                    continue
                known_bad = self._invalid.get(target_id)
                if known_bad is not None and known_bad[0] == expression:
                    continue

                try:
                    self.validate_expression(expression)
                    next_fire = self.next_fire(expression, now)
                except (ConfigError, ValueError, KeyError) as e:
                    message = str(e)
                    self._invalid[target_id] = (expression, message)
                    self._schedules.pop(target_id, None)
                    logger.error(f"Target {target_id} will not be scheduled: {message}",
                                 extra={'target': target_id})
                    continue

                self._invalid.pop(target_id, None)
                self._schedules[target_id] = Schedule(target_id, expression, next_fire)
                logger.info(f"Scheduled {target_id} ({expression}), next run {next_fire.isoformat()}",
                            extra={'target': target_id})

    def next_events(self, now: datetime) -> List[Tuple[BackupTarget, datetime]]:
        """
        Return events due at or before ``now`` ordered by fire time.

        Each due schedule yields exactly one event and advances to its next
        fire strictly after ``now``.
        """
        now = _as_utc(now)
        events: List[Tuple[BackupTarget, datetime]] = []

        with self._lock:
            for target_id, schedule in self._schedules.items():
                if schedule.next_fire > now:
                    continue
                fire_time = schedule.next_fire
                events.append((self._targets[target_id], fire_time))
                schedule.last_fire = fire_time
                schedule.next_fire = self.next_fire(schedule.expression, max(now, fire_time))
                late = (now - fire_time).total_seconds()
                if late >= 1:
                    logger.debug(f"Fire for {target_id} is {late:.0f}s late", extra={'target': target_id})

        events.sort(key=lambda event: event[1])
        return events

    def seconds_until_next(self, now: datetime) -> Optional[float]:
        """Seconds until the earliest next fire, or None if nothing is scheduled."""
        now = _as_utc(now)
        with self._lock:
            if not self._schedules:
                return None
            earliest = min(s.next_fire for s in self._schedules.values())
        return max(0.0, (earliest - now).total_seconds())
