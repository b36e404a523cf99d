################################################################################
# DOCKVAULT
#
# @file:        job_coordinator.py
# @module:      dockvault.cores.job_coordinator
# @description: Admits triggers, runs jobs on a worker pool, keeps job history.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - At most one non-terminal job per target; extra triggers are dropped
# - The per-target lock is also a flock file under state/locks, shared by
#   the daemon and foreground `dockvault backup` runs
# - Retention runs only after a successful job and never changes its outcome
# - shutdown() waits for jobs, then force-resumes whatever is still quiesced
################################################################################

"""Job admission and dispatch for DockVault."""

from __future__ import annotations

import json
import os
import re
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional
from uuid import uuid4

from ..helpers.constants import RESTART_SETTLE_DELAY, RESTART_SETTLE_RETRIES
from ..helpers.exceptions import ArchiveError
from ..helpers.logging import get_logger
from ..helpers.process_lock import ProcessLock
from ..types import Admission, BackupTarget, Job, JobError, JobOutcome, JobRecord, TargetLock
from .archive_builder import ArchiveBuilder
from .job_runner import JobRunner
from .runtime_client import RuntimeClient

logger = get_logger(__name__)

REASON_ALREADY_RUNNING = "AlreadyRunning"
REASON_SHUTTING_DOWN = "ShuttingDown"


class JobCoordinator:
    """
    Owns the target lock table and the worker pool.

    ``on_trigger`` is the only way a job starts; check-and-acquire of the
    target lock happens under one mutex.
    """

    def __init__(
        self,
        runtime: RuntimeClient,
        builder: ArchiveBuilder,
        notifier=None,
        workers: int = 1,
        state_dir: Optional[Path] = None,
        history_size: int = 100,
        persist: bool = True,
        spool_dir: Optional[str] = None,
        settle_retries: int = RESTART_SETTLE_RETRIES,
        settle_delay: float = RESTART_SETTLE_DELAY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.runtime = runtime
        self.builder = builder
        self.notifier = notifier
        self.workers = max(1, int(workers))
        self.state_dir = Path(state_dir) if state_dir else None
        self.persist = persist and self.state_dir is not None
        self.spool_dir = spool_dir
        self.settle_retries = settle_retries
        self.settle_delay = settle_delay
        self._now = clock or (lambda: datetime.now(timezone.utc))

        self.abort_event = threading.Event()
        self._lock = threading.Lock()
        self._released = threading.Condition(self._lock)
        self._locks: Dict[str, TargetLock] = {}
        self._runners: Dict[str, JobRunner] = {}
        self._host_locks: Dict[str, ProcessLock] = {}
        self._futures: Dict[str, Future] = {}
        self._history: Deque[JobRecord] = deque(maxlen=max(1, history_size))
        self._accepting = True
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="dockvault-job")

    @classmethod
    def from_config(
        cls,
        config,
        runtime: RuntimeClient,
        builder: ArchiveBuilder,
        notifier=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> JobCoordinator:
        return cls(
            runtime,
            builder,
            notifier=notifier,
            workers=config.parallel_workers,
            state_dir=config.state_dir,
            history_size=config.getint('state', 'history_size', fallback=100),
            persist=config.getboolean('state', 'persist', fallback=True),
            spool_dir=config.spool_dir,
            clock=clock,
        )

    # --------------- Admission ---------------

    def on_trigger(self, target: BackupTarget) -> Admission:
        """
        Admit a job for ``target`` unless one is already running.

        Returns:
            Admission; rejected ones carry ``AlreadyRunning`` or ``ShuttingDown``
        """
        with self._lock:
            if not self._accepting:
                logger.info(f"Trigger for {target.id} dropped: shutting down", extra={'target': target.id})
                return Admission(False, None, REASON_SHUTTING_DOWN)
            held = self._locks.get(target.id)
            if held is not None:
                logger.info(f"Trigger for {target.id} skipped: job {held.job_id[:8]} still running",
                            extra={'target': target.id, 'job_id': held.job_id})
                return Admission(False, None, REASON_ALREADY_RUNNING)
            host_lock = self._acquire_host_lock(target.id)
            if host_lock is False:
                return Admission(False, None, REASON_ALREADY_RUNNING)

            now = self._now()
            job = Job(target=target, job_id=uuid4().hex, started_at=now)
            runner = JobRunner(
                job,
                self.runtime,
                self.builder,
                abort_event=self.abort_event,
                spool_dir=self.spool_dir,
                settle_retries=self.settle_retries,
                settle_delay=self.settle_delay,
                clock=self._now,
            )
            self._locks[target.id] = TargetLock(target.id, job.job_id, now)
            self._runners[target.id] = runner
            if host_lock is not None:
                self._host_locks[target.id] = host_lock
            try:
                future = self._executor.submit(self._execute, runner)
            except RuntimeError:
                # executor already shut down
                self._release_target(target.id)
                return Admission(False, None, REASON_SHUTTING_DOWN)
            self._futures[job.job_id] = future

        # outside the lock: a finished future runs the callback immediately
        future.add_done_callback(lambda _f, job_id=job.job_id: self._forget(job_id))
        logger.info(f"Job {job.job_id[:8]} admitted for {target.id}",
                    extra={'target': target.id, 'job_id': job.job_id})
        return Admission(True, job, None)

    def run_now(self, target: BackupTarget, timeout: Optional[float] = None) -> Optional[JobRecord]:
        """Admit a job and wait for its record; None if it was not admitted."""
        admission = self.on_trigger(target)
        if not admission.admitted:
            return None
        return self.wait(admission.job.job_id, timeout)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[JobRecord]:
        with self._lock:
            future = self._futures.get(job_id)
        if future is None:
            return next((r for r in self._history if r.job_id == job_id), None)
        return future.result(timeout=timeout)

    # --------------- Queries ---------------

    def active(self) -> List[TargetLock]:
        with self._lock:
            return list(self._locks.values())

    def is_running(self, target_id: str) -> bool:
        with self._lock:
            return target_id in self._locks

    def history(self, target_id: Optional[str] = None) -> List[JobRecord]:
        with self._lock:
            records = list(self._history)
        if target_id is not None:
            records = [r for r in records if r.target_id == target_id]
        return records

    # --------------- Worker ---------------

    def _execute(self, runner: JobRunner) -> JobRecord:
        job = runner.job
        try:
            record = runner.run()
        except Exception as e:
            logger.exception(f"Job {job.job_id[:8]} for {job.target_id} crashed: {e}",
                             extra={'target': job.target_id, 'job_id': job.job_id})
            runner.force_resume()
            job.error = job.error or JobError(job.state.value, type(e).__name__, str(e))
            job.outcome = JobOutcome.FAILED
            job.finished_at = self._now()
            record = job.freeze()

        self._save_record(record)
        with self._released:
            self._history.append(record)
            self._release_target(job.target_id)
            self._released.notify_all()

        if record.outcome is JobOutcome.SUCCEEDED and not job.target.dry_run:
            self._sweep(job.target)
        if self.notifier is not None:
            self.notifier.notify(record)
        return record

    def _acquire_host_lock(self, target_id: str):
        """
        Take the flock file for ``target_id`` so other DockVault processes
        on this host cannot run the same target.

        Returns:
            The held ProcessLock, None without a state directory, or False
            if another process holds it
        """
        if self.state_dir is None:
            return None
        safe_name = re.sub(r'[^A-Za-z0-9_.-]', '_', target_id)
        lock = ProcessLock(str(self.state_dir / 'locks' / f"{safe_name}.lock"), remove_on_release=False)
        if lock.acquire():
            return lock
        pid = lock.holder_pid()
        logger.info(f"Trigger for {target_id} skipped: locked by another process"
                    f"{f' (pid {pid})' if pid else ''}", extra={'target': target_id})
        return False

    def _release_target(self, target_id: str) -> None:
        # caller holds self._lock
        self._locks.pop(target_id, None)
        self._runners.pop(target_id, None)
        host_lock = self._host_locks.pop(target_id, None)
        if host_lock is not None:
            host_lock.release()

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)

    def _sweep(self, target: BackupTarget) -> None:
        try:
            deleted = self.builder.sweep(target.id, target.retention, self._now())
        except (ArchiveError, OSError) as e:
            logger.warning(f"Retention sweep for {target.id} failed: {e}",
                           extra={'target': target.id, 'operation': 'retention'})
            return
        if deleted:
            logger.info(f"Retention removed {len(deleted)} archive(s) of {target.id}",
                        extra={'target': target.id, 'operation': 'retention'})

    def _save_record(self, record: JobRecord) -> None:
        if not self.persist:
            return
        jobs_dir = self.state_dir / 'jobs'
        filename = f"{record.target_id}_{record.started_at.strftime('%Y%m%d_%H%M%S')}_{record.job_id[:8]}.json"
        try:
            jobs_dir.mkdir(parents=True, exist_ok=True)
            tmp = jobs_dir / f".{filename}.tmp"
            with open(tmp, 'w') as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp, jobs_dir / filename)
        except OSError as e:
            logger.warning(f"Could not save job record: {e}",
                           extra={'target': record.target_id, 'job_id': record.job_id})
            return
        logger.debug(f"Saved job record to {jobs_dir / filename}",
                     extra={'target': record.target_id, 'job_id': record.job_id})

    # --------------- Shutdown ---------------

    def shutdown(self, timeout: float) -> bool:
        """
        Stop admitting, abort running jobs and wait for them.

        Jobs still holding their target lock after ``timeout`` seconds get a
        forced best-effort resume.

        Returns:
            True if every job finished in time
        """
        with self._lock:
            self._accepting = False
            running = len(self._locks)
        self.abort_event.set()
        if running:
            logger.info(f"Shutdown: waiting up to {timeout:g}s for {running} job(s)")

        deadline = time.monotonic() + max(0.0, timeout)
        with self._released:
            while self._locks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._released.wait(remaining)
            leftover = list(self._runners.values())

        for runner in leftover:
            logger.error(f"Job {runner.job.job_id[:8]} for {runner.job.target_id} did not finish, "
                         f"forcing resume", extra={'target': runner.job.target_id, 'job_id': runner.job.job_id})
            runner.force_resume()

        self._executor.shutdown(wait=False, cancel_futures=True)
        return not leftover
