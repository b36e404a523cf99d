################################################################################
# DOCKVAULT
#
# @file:        types.py
# @module:      dockvault.types
# @description: Shared data models for targets, jobs, captures and archives.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - BackupTarget and its policies are frozen; jobs only reference them
# - Job is mutable while its worker owns it and freezes into a JobRecord
# - CaptureResult keeps its spooled bytes until the archive is built
################################################################################

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import IO, Any, Dict, List, Mapping, Optional, Tuple


# ---- Runtime DTOs ----

@dataclass(frozen=True)
class ContainerMount:
    destination: str
    name: Optional[str] = None
    type: str = "volume"


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    state: str = "running"
    mounts: Tuple[ContainerMount, ...] = ()

    @property
    def is_running(self) -> bool:
        # docker reports paused containers as state "paused", they are still running
        return self.state in ("running", "paused")

    @property
    def is_paused(self) -> bool:
        return self.state == "paused"

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str = ""


# ---- Target configuration ----

@dataclass(frozen=True)
class VolumeSpec:
    name: str
    path: str


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: float = 2.0
    backoff_max: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        return min(self.backoff * (2 ** (attempt - 1)), self.backoff_max)


@dataclass(frozen=True)
class PhaseRetryPolicies:
    hook: RetryPolicy = field(default_factory=RetryPolicy)
    capture: RetryPolicy = field(default_factory=RetryPolicy)
    resume: RetryPolicy = field(default_factory=RetryPolicy)
    sink: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(frozen=True)
class RetentionPolicy:
    keep_last: Optional[int] = None
    max_age_days: Optional[int] = None

    @property
    def enabled(self) -> bool:
        return self.keep_last is not None or self.max_age_days is not None


@dataclass(frozen=True)
class PhaseTimeouts:
    hook: float = 300.0
    quiesce: float = 120.0
    capture: float = 3600.0
    archive: float = 3600.0
    resume: float = 120.0


_EXIT_RANGE = re.compile(r"^(?P<start>-?\d+)-(?P<end>-?\d+)$|^(?P<single>-?\d+)$")


@dataclass(frozen=True)
class ExitCodePolicy:
    """Decides whether a hook's exit code counts as success."""

    mode: str = "fail"
    ranges: Tuple[Tuple[int, int], ...] = ()

    @classmethod
    def parse(cls, value: str) -> ExitCodePolicy:
        """
        Parse ``fail``, ``ignore`` or a comma list of codes and ranges.

        Ranges look like ``1-5``, ``-5--1`` or ``-2-1``; reversed bounds are swapped.

        Raises:
            ValueError: If a part is neither a number nor a range
        """
        value = re.sub(r"\s", "", value or "")
        if value in ("", "fail"):
            return cls("fail")
        if value == "ignore":
            return cls("ignore")

        ranges = []
        for part in value.split(","):
            match = _EXIT_RANGE.match(part)
            if not match:
                raise ValueError(f"invalid exit code range: {part!r}")
            if match.group("single") is not None:
                code = int(match.group("single"))
                ranges.append((code, code))
            else:
                start, end = int(match.group("start")), int(match.group("end"))
                if start > end:
                    start, end = end, start
                ranges.append((start, end))
        return cls("custom", tuple(ranges))

    def accepts(self, exit_code: int) -> bool:
        if self.mode == "ignore":
            return True
        if self.mode == "fail":
            return exit_code == 0
        return any(start <= exit_code <= end for start, end in self.ranges)


@dataclass(frozen=True)
class HookCommand:
    command: str
    user: Optional[str] = None
    exit_codes: ExitCodePolicy = field(default_factory=ExitCodePolicy)


class QuiesceAction(str, Enum):
    PAUSE = "pause"
    STOP = "stop"
    IGNORE = "ignore"


@dataclass(frozen=True)
class BackupTarget:
    id: str
    container: ContainerRef
    schedule: str
    volumes: Tuple[VolumeSpec, ...]
    action: QuiesceAction = QuiesceAction.PAUSE
    pre_hook: Optional[HookCommand] = None
    post_hook: Optional[HookCommand] = None
    retry: PhaseRetryPolicies = field(default_factory=PhaseRetryPolicies)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    timeouts: PhaseTimeouts = field(default_factory=PhaseTimeouts)
    dry_run: bool = False


# ---- Scheduling ----

@dataclass
class Schedule:
    target_id: str
    expression: str
    next_fire: datetime
    last_fire: Optional[datetime] = None


# ---- Jobs ----

class JobState(str, Enum):
    PENDING = "pending"
    PRE_HOOK = "pre_hook"
    QUIESCING = "quiescing"
    CAPTURING = "capturing"
    ARCHIVING = "archiving"
    RESUMING = "resuming"
    POST_HOOK = "post_hook"
    FAILING = "failing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.ABORTED)


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class CaptureResult:
    volume: VolumeSpec
    size: int = 0
    checksum: str = ""
    success: bool = False
    error: Optional[str] = None
    spool: Optional[IO[bytes]] = field(default=None, repr=False, compare=False)

    def discard(self) -> None:
        """Drop the spooled bytes; the result itself stays readable."""
        if self.spool is not None:
            try:
                self.spool.close()
            finally:
                self.spool = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "volume": self.volume.name,
            "path": self.volume.path,
            "size": self.size,
            "sha256": self.checksum,
            "success": self.success,
            "error": self.error,
        }


@dataclass(frozen=True)
class Archive:
    name: str
    manifest: Mapping[str, Any]
    total_size: int
    location: Optional[str] = None


@dataclass(frozen=True)
class StoredArchive:
    name: str
    target: str
    created_at: datetime
    location: str
    size: int = 0


@dataclass(frozen=True)
class TargetLock:
    target_id: str
    job_id: str
    acquired_at: datetime


@dataclass(frozen=True)
class JobError:
    phase: str
    type: str
    message: str


@dataclass(frozen=True)
class Transition:
    source: JobState
    dest: JobState
    at: datetime


@dataclass
class Job:
    target: BackupTarget
    job_id: str
    started_at: datetime
    state: JobState = JobState.PENDING
    attempts: Dict[str, int] = field(default_factory=dict)
    captures: List[CaptureResult] = field(default_factory=list)
    outcome: Optional[JobOutcome] = None
    error: Optional[JobError] = None
    archive: Optional[Archive] = None
    transitions: List[Transition] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    resume_error: Optional[str] = None

    @property
    def target_id(self) -> str:
        return self.target.id

    def freeze(self) -> JobRecord:
        return JobRecord(
            target_id=self.target.id,
            job_id=self.job_id,
            started_at=self.started_at,
            finished_at=self.finished_at,
            state=self.state,
            outcome=self.outcome,
            attempts=dict(self.attempts),
            captures=tuple(c.to_dict() for c in self.captures),
            error=self.error,
            archive_name=self.archive.name if self.archive else None,
            archive_location=self.archive.location if self.archive else None,
            transitions=tuple(self.transitions),
            resume_error=self.resume_error,
        )


@dataclass(frozen=True)
class JobRecord:
    target_id: str
    job_id: str
    started_at: datetime
    finished_at: Optional[datetime]
    state: JobState
    outcome: Optional[JobOutcome]
    attempts: Mapping[str, int]
    captures: Tuple[Mapping[str, Any], ...]
    error: Optional[JobError]
    archive_name: Optional[str]
    archive_location: Optional[str]
    transitions: Tuple[Transition, ...]
    resume_error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target_id,
            "job_id": self.job_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "attempts": dict(self.attempts),
            "captures": [dict(c) for c in self.captures],
            "error": (
                {"phase": self.error.phase, "type": self.error.type, "message": self.error.message}
                if self.error else None
            ),
            "archive": {"name": self.archive_name, "location": self.archive_location},
            "transitions": [
                {"from": t.source.value, "to": t.dest.value, "at": t.at.isoformat()}
                for t in self.transitions
            ],
            "resume_error": self.resume_error,
        }


@dataclass(frozen=True)
class Admission:
    admitted: bool
    job: Optional[Job] = None
    reason: Optional[str] = None
