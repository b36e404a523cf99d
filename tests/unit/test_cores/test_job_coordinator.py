"""Unit tests for job admission, history and shutdown."""

import io
import json
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from dockvault.cores.job_coordinator import (
    REASON_ALREADY_RUNNING,
    REASON_SHUTTING_DOWN,
    JobCoordinator,
)
from dockvault.cores.job_runner import JobRunner
from dockvault.types import JobOutcome, RetentionPolicy


class TickingClock:
    """Clock that advances one second per call."""

    def __init__(self, start=datetime(2025, 1, 1, tzinfo=timezone.utc)):
        self.current = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.current += timedelta(seconds=1)
            return self.current


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def coordinator(fake_runtime, builder, state_dir):
    coordinator = JobCoordinator(
        fake_runtime, builder, workers=2, state_dir=state_dir, settle_delay=0, clock=TickingClock(),
    )
    yield coordinator
    coordinator.shutdown(timeout=5)


def gate_copy_out(fake_runtime, gate):
    """Make copy_out block until ``gate`` is set."""
    original = fake_runtime.copy_out

    def blocked(ref, path):
        gate.wait(10)
        return original(ref, path)

    fake_runtime.copy_out = blocked


# =============================================================================
# Admission
# =============================================================================


@pytest.mark.unit
class TestAdmission:

    def test_second_trigger_rejected_while_running(self, coordinator, fake_runtime, make_target):
        gate = threading.Event()
        gate_copy_out(fake_runtime, gate)
        target = make_target("app")

        first = coordinator.on_trigger(target)
        second = coordinator.on_trigger(target)

        assert first.admitted
        assert not second.admitted
        assert second.reason == REASON_ALREADY_RUNNING
        assert coordinator.is_running("app")
        assert [lock.job_id for lock in coordinator.active()] == [first.job.job_id]

        gate.set()
        record = coordinator.wait(first.job.job_id, timeout=10)

        assert record.outcome is JobOutcome.SUCCEEDED
        assert not coordinator.is_running("app")
        assert coordinator.on_trigger(target).admitted

    def test_concurrent_triggers_admit_exactly_one(self, coordinator, fake_runtime, make_target):
        gate = threading.Event()
        gate_copy_out(fake_runtime, gate)
        target = make_target("app")
        results = []
        barrier = threading.Barrier(8)

        def trigger():
            barrier.wait()
            results.append(coordinator.on_trigger(target))

        threads = [threading.Thread(target=trigger) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        gate.set()

        admitted = [a for a in results if a.admitted]
        assert len(admitted) == 1
        assert all(a.reason == REASON_ALREADY_RUNNING for a in results if not a.admitted)
        coordinator.wait(admitted[0].job.job_id, timeout=10)

    def test_different_targets_run_in_parallel(self, coordinator, fake_runtime, make_target):
        gate = threading.Event()
        gate_copy_out(fake_runtime, gate)

        a = coordinator.on_trigger(make_target("a"))
        b = coordinator.on_trigger(make_target("b"))

        assert a.admitted and b.admitted
        assert {lock.target_id for lock in coordinator.active()} == {"a", "b"}
        gate.set()
        assert coordinator.wait(a.job.job_id, 10).outcome is JobOutcome.SUCCEEDED
        assert coordinator.wait(b.job.job_id, 10).outcome is JobOutcome.SUCCEEDED

    def test_second_coordinator_on_same_state_dir_rejected(
        self, coordinator, fake_runtime, builder, state_dir, make_target,
    ):
        """A foreground run and the daemon share the lock files in state_dir."""
        gate = threading.Event()
        gate_copy_out(fake_runtime, gate)
        target = make_target("app")
        other = JobCoordinator(
            fake_runtime, builder, state_dir=state_dir, settle_delay=0,
            clock=TickingClock(datetime(2025, 1, 2, tzinfo=timezone.utc)),
        )

        try:
            first = coordinator.on_trigger(target)
            second = other.on_trigger(target)
            gate.set()

            assert first.admitted
            assert not second.admitted
            assert second.reason == REASON_ALREADY_RUNNING
            assert (state_dir / "locks" / "app.lock").exists()
            assert coordinator.wait(first.job.job_id, timeout=10).outcome is JobOutcome.SUCCEEDED
            assert fake_runtime.count("pause", "app") == 1

            record = other.run_now(target, timeout=10)
            assert record.outcome is JobOutcome.SUCCEEDED
        finally:
            other.shutdown(timeout=5)

    def test_lock_released_after_failure(self, coordinator, fake_runtime, make_target):
        fake_runtime.fail_on("pause", "app")
        target = make_target("app")

        record = coordinator.run_now(target, timeout=10)

        assert record.outcome is JobOutcome.FAILED
        assert not coordinator.is_running("app")
        assert coordinator.run_now(target, timeout=10) is not None

    def test_crashed_runner_still_releases_lock(self, coordinator, make_target):
        with patch.object(JobRunner, "run", side_effect=RuntimeError("bug")):
            record = coordinator.run_now(make_target("app"), timeout=10)

        assert record.outcome is JobOutcome.FAILED
        assert record.error.type == "RuntimeError"
        assert not coordinator.is_running("app")


# =============================================================================
# History, persistence, notification
# =============================================================================


@pytest.mark.unit
class TestHistory:

    def test_history_and_persisted_record(self, coordinator, make_target, state_dir):
        record = coordinator.run_now(make_target("app"), timeout=10)

        assert coordinator.history() == [record]
        assert coordinator.history("other") == []
        assert coordinator.wait(record.job_id) == record

        files = list((state_dir / "jobs").glob("app_*.json"))
        assert len(files) == 1
        data = json.loads(files[0].read_text())
        assert data["job_id"] == record.job_id
        assert data["outcome"] == "succeeded"
        assert data["transitions"][-1]["to"] == "succeeded"

    def test_persist_disabled(self, fake_runtime, builder, make_target, state_dir):
        coordinator = JobCoordinator(fake_runtime, builder, state_dir=state_dir, persist=False)
        try:
            coordinator.run_now(make_target("app"), timeout=10)
        finally:
            coordinator.shutdown(5)

        assert not (state_dir / "jobs").exists()

    def test_history_is_bounded(self, fake_runtime, builder, make_target):
        coordinator = JobCoordinator(fake_runtime, builder, history_size=2, clock=TickingClock())
        try:
            target = make_target("app")
            ids = [coordinator.run_now(target, timeout=10).job_id for _ in range(3)]
        finally:
            coordinator.shutdown(5)

        assert [r.job_id for r in coordinator.history()] == ids[1:]

    def test_notifier_receives_record(self, fake_runtime, builder, make_target):
        notifier = MagicMock()
        coordinator = JobCoordinator(fake_runtime, builder, notifier=notifier)
        try:
            record = coordinator.run_now(make_target("app"), timeout=10)
        finally:
            coordinator.shutdown(5)

        notifier.notify.assert_called_once_with(record)


# =============================================================================
# Retention after jobs
# =============================================================================


@pytest.mark.unit
class TestRetentionSweep:

    def test_success_sweeps(self, coordinator, make_target, sink):
        target = make_target("app", retention=RetentionPolicy(keep_last=1))

        coordinator.run_now(target, timeout=10)
        second = coordinator.run_now(target, timeout=10)

        assert [a.name for a in sink.list("app")] == [second.archive_name]

    def test_failed_job_does_not_sweep(self, coordinator, fake_runtime, make_target, sink):
        for day in (1, 2, 3):
            sink.write(f"app-2024010{day}T000000Z", {"target": "app"}, io.BytesIO(b"x"))
        fake_runtime.fail_on("pause", "app")
        target = make_target("app", retention=RetentionPolicy(keep_last=1))

        coordinator.run_now(target, timeout=10)

        assert len(sink.list("app")) == 3

    def test_dry_run_does_not_sweep(self, coordinator, make_target, sink):
        for day in (1, 2, 3):
            sink.write(f"app-2024010{day}T000000Z", {"target": "app"}, io.BytesIO(b"x"))
        target = make_target("app", retention=RetentionPolicy(keep_last=1), dry_run=True)

        coordinator.run_now(target, timeout=10)

        assert len(sink.list("app")) == 3


# =============================================================================
# Shutdown
# =============================================================================


@pytest.mark.unit
class TestShutdown:

    def test_rejects_after_shutdown(self, coordinator, make_target):
        assert coordinator.shutdown(timeout=1) is True

        admission = coordinator.on_trigger(make_target("app"))

        assert not admission.admitted
        assert admission.reason == REASON_SHUTTING_DOWN

    def test_running_job_is_aborted_and_resumed(self, coordinator, fake_runtime, make_target):
        original = fake_runtime.copy_out
        started = threading.Event()

        def wait_for_abort(ref, path):
            started.set()
            coordinator.abort_event.wait(10)
            return original(ref, path)

        fake_runtime.copy_out = wait_for_abort
        admission = coordinator.on_trigger(make_target("app"))
        assert started.wait(10)

        assert coordinator.shutdown(timeout=10) is True

        record = coordinator.history("app")[0]
        assert record.job_id == admission.job.job_id
        assert record.outcome is JobOutcome.ABORTED
        assert fake_runtime.state("app") == "running"

    def test_stuck_job_gets_forced_resume(self, coordinator, fake_runtime, make_target):
        gate = threading.Event()
        started = threading.Event()
        original = fake_runtime.copy_out

        def stuck(ref, path):
            started.set()
            gate.wait(10)
            return original(ref, path)

        fake_runtime.copy_out = stuck
        admission = coordinator.on_trigger(make_target("app"))
        assert started.wait(10)
        assert fake_runtime.state("app") == "paused"

        try:
            assert coordinator.shutdown(timeout=0.2) is False
            assert fake_runtime.state("app") == "running"
        finally:
            gate.set()
        record = coordinator.wait(admission.job.job_id, timeout=10)
        assert record.outcome is JobOutcome.ABORTED
        assert fake_runtime.count("unpause", "app") == 1


@pytest.mark.unit
def test_from_config(config_factory, fake_runtime, builder):
    cfg = config_factory({"state": {"history_size": "5", "persist": "false"}})

    coordinator = JobCoordinator.from_config(cfg, fake_runtime, builder)
    try:
        assert coordinator.workers == 2
        assert coordinator.persist is False
        assert coordinator._history.maxlen == 5
    finally:
        coordinator.shutdown(1)
