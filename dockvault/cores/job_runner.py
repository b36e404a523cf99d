################################################################################
# DOCKVAULT
#
# @file:        job_runner.py
# @module:      dockvault.cores.job_runner
# @description: Per-job state machine: hooks, quiesce, capture, archive, resume.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Every path out of pre_hook..archiving goes through failing -> resuming
# - The quiesce lease undoes only what this job changed, exactly once
# - Captures are spooled and hashed incrementally, one volume at a time
################################################################################

"""
Job state machine for DockVault.

Happy path::

    pending -> pre_hook -> quiescing -> capturing -> archiving
            -> resuming -> post_hook -> succeeded

Any failure before ``resuming`` moves to ``failing`` first; ``resuming`` is
never skipped.
"""

from __future__ import annotations

import hashlib
import tempfile
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Optional

from ..helpers.constants import (
    ARCHIVE_CANCEL_GRACE,
    RESTART_SETTLE_DELAY,
    RESTART_SETTLE_RETRIES,
    SPOOL_MEMORY_LIMIT,
    STATE_RESTARTING,
)
from ..helpers.exceptions import (
    AbortError,
    ContainerRuntimeError,
    HookFailedError,
    IllegalTransitionError,
    PhaseTimeoutError,
)
from ..helpers.logging import get_logger
from ..helpers.retry import call_with_retry, run_with_timeout
from ..types import (
    BackupTarget,
    CaptureResult,
    ContainerRef,
    HookCommand,
    Job,
    JobError,
    JobOutcome,
    JobRecord,
    JobState,
    QuiesceAction,
    Transition,
    VolumeSpec,
)
from .archive_builder import ArchiveBuilder
from .runtime_client import RuntimeClient

logger = get_logger(__name__)

S = JobState

TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    S.PENDING: frozenset({S.PRE_HOOK, S.FAILING}),
    S.PRE_HOOK: frozenset({S.QUIESCING, S.FAILING}),
    S.QUIESCING: frozenset({S.CAPTURING, S.FAILING}),
    S.CAPTURING: frozenset({S.ARCHIVING, S.FAILING}),
    S.ARCHIVING: frozenset({S.RESUMING, S.FAILING}),
    S.FAILING: frozenset({S.RESUMING}),
    S.RESUMING: frozenset({S.POST_HOOK, S.SUCCEEDED, S.FAILED, S.ABORTED}),
    S.POST_HOOK: frozenset({S.SUCCEEDED, S.FAILED, S.ABORTED}),
}

TERMINAL_OUTCOMES = {
    S.SUCCEEDED: JobOutcome.SUCCEEDED,
    S.FAILED: JobOutcome.FAILED,
    S.ABORTED: JobOutcome.ABORTED,
}


class QuiesceLease:
    """
    Scoped hold on a paused or stopped container.

    ``quiesce`` records what was changed; ``release`` undoes exactly that and
    only once, no matter how many threads ask.
    """

    def __init__(self, runtime: RuntimeClient, container: ContainerRef, action: QuiesceAction):
        self.runtime = runtime
        self.container = container
        self.action = action
        self.original_state: Optional[str] = None
        self.changed = False
        self.released = False
        self._lock = threading.Lock()

    @property
    def held(self) -> bool:
        with self._lock:
            return self.changed and not self.released

    def quiesce(
        self,
        abort_event: Optional[threading.Event] = None,
        settle_retries: int = RESTART_SETTLE_RETRIES,
        settle_delay: float = RESTART_SETTLE_DELAY,
    ) -> None:
        """
        Pause or stop the container according to the action.

        Raises:
            ContainerRuntimeError: If the container did not settle or the change failed
            AbortError: If shutdown began while waiting for a restart to settle
        """
        ref = self.runtime.inspect(self.container)
        for remaining in range(settle_retries, 0, -1):
            if ref.state != STATE_RESTARTING:
                break
            logger.debug(f"Container {ref.name} is restarting, waiting {settle_delay:g}s "
                         f"({remaining} tries remaining)", extra={'container': ref.name})
            if abort_event is not None:
                if abort_event.wait(settle_delay):
                    raise AbortError("aborted while waiting for container to settle")
            else:
                time.sleep(settle_delay)
            ref = self.runtime.inspect(self.container)
        if ref.state == STATE_RESTARTING:
            raise ContainerRuntimeError(
                "quiesce", f"container has not settled after {settle_retries} retries", target=ref.name
            )

        self.original_state = ref.state
        if self.action is QuiesceAction.IGNORE or not ref.is_running:
            logger.debug(f"Container {ref.name} left as is ({self.action.value}, {ref.state})",
                         extra={'container': ref.name})
            return

        if self.action is QuiesceAction.STOP:
            if ref.is_paused:
                raise ContainerRuntimeError("stop", "container is paused, cannot stop", target=ref.name)
            self.runtime.stop(self.container)
        elif not ref.is_paused:
            self.runtime.pause(self.container)
        else:
            return

        with self._lock:
            self.changed = True
            late = self.released
        if late:
            # released while the change was in flight (timeout); undo it right away
            self._undo()

    def release(self) -> bool:
        """
        Undo the quiesce.

        Returns:
            True if this call restored the container, False if nothing was left to do
        """
        with self._lock:
            if self.released:
                return False
            if not self.changed:
                self.released = True
                return False
            self._undo()
            self.released = True
            return True

    def _undo(self) -> None:
        if self.action is QuiesceAction.STOP:
            self.runtime.start(self.container)
        else:
            self.runtime.unpause(self.container)
        logger.debug(f"Container {self.container.name} restored to {self.original_state}",
                     extra={'container': self.container.name})


class JobRunner:
    """
    Drives one Job through its states.

    The runner owns its Job exclusively until ``run`` returns the frozen
    record.
    """

    def __init__(
        self,
        job: Job,
        runtime: RuntimeClient,
        builder: ArchiveBuilder,
        abort_event: Optional[threading.Event] = None,
        spool_dir: Optional[str] = None,
        settle_retries: int = RESTART_SETTLE_RETRIES,
        settle_delay: float = RESTART_SETTLE_DELAY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.job = job
        self.runtime = runtime
        self.builder = builder
        self.abort_event = abort_event or threading.Event()
        self.spool_dir = spool_dir
        self.settle_retries = settle_retries
        self.settle_delay = settle_delay
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self.lease = QuiesceLease(runtime, job.target.container, job.target.action)
        self.pre_hook_ran = False

    @property
    def target(self) -> BackupTarget:
        return self.job.target

    @property
    def _extra(self) -> dict:
        return {'target': self.target.id, 'job_id': self.job.job_id, 'phase': self.job.state.value}

    # --------------- Main sequence ---------------

    def run(self) -> JobRecord:
        failure: Optional[BaseException] = None
        try:
            try:
                self._transition(S.PRE_HOOK)
                self._pre_hook()
                self._transition(S.QUIESCING)
                self._quiesce()
                self._transition(S.CAPTURING)
                self._capture()
                self._transition(S.ARCHIVING)
                self._archive()
            except IllegalTransitionError:
                raise
            except Exception as e:
                failure = e
                self._fail(e)

            self._transition(S.RESUMING)
            resumed = self._resume()

            if failure is not None:
                if self.pre_hook_ran and self.target.post_hook is not None:
                    self._transition(S.POST_HOOK)
                    self._post_hook(best_effort=True)
                self._transition(S.ABORTED if isinstance(failure, AbortError) else S.FAILED)
            elif not resumed:
                self._transition(S.FAILED)
            elif self._should_run_post_hook():
                self._transition(S.POST_HOOK)
                aborted = self.abort_event.is_set()
                ok = self._post_hook(best_effort=False)
                aborted = aborted or self.abort_event.is_set()
                self._transition(S.ABORTED if aborted else (S.SUCCEEDED if ok else S.FAILED))
            else:
                self._transition(S.SUCCEEDED)
        finally:
            if self.lease.held:
                logger.error("Container still quiesced after job; releasing", extra=self._extra)
                self.force_resume()
            self._discard_captures()

        return self.job.freeze()

    def force_resume(self) -> bool:
        """Best-effort release of the quiesce lease from any thread."""
        try:
            return self.lease.release()
        except (ContainerRuntimeError, OSError) as e:
            logger.error(f"Forced resume of {self.target.container.name} failed: {e}",
                         extra={'target': self.target.id, 'job_id': self.job.job_id})
            return False

    # --------------- Phases ---------------

    def _pre_hook(self) -> None:
        hook = self.target.pre_hook
        if hook is None:
            return
        ref = self.runtime.inspect(self.target.container)
        if not ref.is_running or ref.is_paused:
            logger.info(f"Pre hook skipped, container is {ref.state}", extra=self._extra)
            return
        self._run_hook(hook, "pre_hook")
        self.pre_hook_ran = True

    def _quiesce(self) -> None:
        if self.abort_event.is_set():
            raise AbortError("aborted before quiescing")
        run_with_timeout(
            self.lease.quiesce, self.target.timeouts.quiesce, "quiesce",
            self.abort_event, self.settle_retries, self.settle_delay,
        )
        logger.info(f"Container {self.target.container.name} quiesced ({self.target.action.value})",
                    extra=self._extra)

    def _capture(self) -> None:
        for volume in self.target.volumes:
            def attempt(volume: VolumeSpec = volume) -> CaptureResult:
                cancel = threading.Event()
                return run_with_timeout(
                    self._capture_volume, self.target.timeouts.capture, "capture",
                    volume, cancel, cancel=cancel,
                )

            try:
                result = call_with_retry(
                    attempt,
                    self.target.retry.capture,
                    phase="capture",
                    abort_event=self.abort_event,
                    on_attempt=lambda _n: self._count("capture"),
                    log_extra=dict(self._extra, volume=volume.name),
                )
            except Exception as e:
                self.job.captures.append(CaptureResult(volume=volume, success=False, error=str(e)))
                raise
            self.job.captures.append(result)
            logger.info(f"Captured {volume.name} ({result.size} bytes)",
                        extra=dict(self._extra, volume=volume.name))

    def _capture_volume(self, volume: VolumeSpec, cancel: threading.Event) -> CaptureResult:
        spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MEMORY_LIMIT, dir=self.spool_dir)
        digest = hashlib.sha256()
        size = 0
        stream = self.runtime.copy_out(self.target.container, volume.path)
        try:
            for chunk in stream:
                if self.abort_event.is_set():
                    raise AbortError(f"capture of {volume.name} aborted")
                if cancel.is_set():
                    raise PhaseTimeoutError("capture", self.target.timeouts.capture)
                spool.write(chunk)
                digest.update(chunk)
                size += len(chunk)
        except BaseException:
            spool.close()
            raise
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
        return CaptureResult(volume=volume, size=size, checksum=digest.hexdigest(), success=True, spool=spool)

    def _archive(self) -> None:
        cancel = threading.Event()
        finished = threading.Event()

        def build():
            try:
                return self.builder.build(self.job, list(self.job.captures), self.abort_event, cancel)
            finally:
                finished.set()

        try:
            self.job.archive = run_with_timeout(build, self.target.timeouts.archive, "archive", cancel=cancel)
        except PhaseTimeoutError:
            # the build thread still reads the spools and may be mid-write to the sink
            if not finished.wait(ARCHIVE_CANCEL_GRACE):
                logger.error(f"Archive build did not stop within {ARCHIVE_CANCEL_GRACE:g}s of its timeout",
                             extra=self._extra)
            raise
        self._discard_captures()

    def _resume(self) -> bool:
        # not abortable: a paused container must come back even during shutdown
        def attempt() -> bool:
            return run_with_timeout(self.lease.release, self.target.timeouts.resume, "resume")

        try:
            call_with_retry(
                attempt,
                self.target.retry.resume,
                phase="resume",
                on_attempt=lambda _n: self._count("resume"),
                log_extra=self._extra,
            )
            return True
        except Exception as e:
            self.job.resume_error = str(e)
            if self.job.error is None:
                self.job.error = JobError(S.RESUMING.value, type(e).__name__, str(e))
            logger.error(f"Resume of {self.target.container.name} failed: {e}", extra=self._extra)
            return False

    def _post_hook(self, best_effort: bool) -> bool:
        try:
            self._run_hook(self.target.post_hook, "post_hook")
            return True
        except Exception as e:
            if best_effort:
                logger.warning(f"Post hook failed after failed backup: {e}", extra=self._extra)
            else:
                self.job.error = JobError(S.POST_HOOK.value, type(e).__name__, str(e))
                logger.error(f"Post hook failed: {e}", extra=self._extra)
            return False

    def _should_run_post_hook(self) -> bool:
        if self.target.post_hook is None:
            return False
        if self.target.pre_hook is not None:
            return self.pre_hook_ran
        try:
            ref = self.runtime.inspect(self.target.container)
        except ContainerRuntimeError as e:
            logger.warning(f"Cannot inspect container before post hook: {e}", extra=self._extra)
            return True
        return ref.is_running and not ref.is_paused

    def _run_hook(self, hook: HookCommand, phase: str) -> None:
        container = self.target.container

        def attempt() -> None:
            result = run_with_timeout(
                self.runtime.exec, self.target.timeouts.hook, "hook",
                container, hook.command, hook.user,
            )
            if not hook.exit_codes.accepts(result.exit_code):
                raise HookFailedError(phase, result.exit_code, result.output, target=container.name)
            logger.debug(f"{phase} exited with {result.exit_code}", extra=self._extra)

        call_with_retry(
            attempt,
            self.target.retry.hook,
            phase=phase,
            abort_event=self.abort_event if phase == "pre_hook" else None,
            on_attempt=lambda _n: self._count("hook"),
            log_extra=self._extra,
        )

    # --------------- State bookkeeping ---------------

    def _transition(self, dest: JobState) -> None:
        source = self.job.state
        if dest not in TRANSITIONS.get(source, frozenset()):
            raise IllegalTransitionError(f"illegal transition {source.value} -> {dest.value}")
        now = self._now()
        self.job.transitions.append(Transition(source, dest, now))
        self.job.state = dest

        extra = {'target': self.target.id, 'job_id': self.job.job_id, 'phase': dest.value}
        if dest in TERMINAL_OUTCOMES:
            self.job.outcome = TERMINAL_OUTCOMES[dest]
            self.job.finished_at = now
            extra['outcome'] = self.job.outcome.value
            level = logger.info if dest is S.SUCCEEDED else logger.error
            cause = f": {self.job.error.message}" if self.job.error and dest is not S.SUCCEEDED else ""
            level(f"Backup of {self.target.id} {dest.value}{cause}", extra=extra)
        else:
            logger.info(f"{self.target.id}: {source.value} -> {dest.value}", extra=extra)

    def _fail(self, error: BaseException) -> None:
        phase = self.job.state
        self.job.error = JobError(phase.value, type(error).__name__, str(error))
        logger.error(f"Phase {phase.value} failed: {error}", extra=self._extra)
        self._transition(S.FAILING)
        self._discard_captures()

    def _discard_captures(self) -> None:
        for capture in self.job.captures:
            capture.discard()

    def _count(self, phase: str) -> None:
        self.job.attempts[phase] = self.job.attempts.get(phase, 0) + 1
