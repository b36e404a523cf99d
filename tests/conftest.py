"""
Shared pytest fixtures for DockVault tests.

Provides an in-memory container runtime with failure injection, temporary
archive storage, target factories and config files.
"""

import logging
import threading
from dataclasses import replace
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

import pytest
from typer.testing import CliRunner

from dockvault.cores.archive_builder import ArchiveBuilder
from dockvault.cores.storage import FilesystemStorageSink
from dockvault.helpers.config import Config
from dockvault.helpers.exceptions import ContainerRuntimeError, RuntimeUnavailableError
from dockvault.types import (
    BackupTarget,
    ContainerMount,
    ContainerRef,
    ExecResult,
    HookCommand,
    PhaseRetryPolicies,
    PhaseTimeouts,
    QuiesceAction,
    RetentionPolicy,
    RetryPolicy,
    VolumeSpec,
)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: multi-component scenarios")


# =============================================================================
# Fake runtime
# =============================================================================


class FakeRuntime:
    """
    In-memory RuntimeClient.

    ``fail_on(operation, key)`` makes the next ``times`` calls raise; ``key``
    is the container name, ``name:path`` for copy_out or the command for exec.
    """

    def __init__(self):
        self.available = True
        self.calls: List[Tuple[str, str]] = []
        self.exec_results: Dict[str, ExecResult] = {}
        self._containers: Dict[str, ContainerRef] = {}
        self._states: Dict[str, str] = {}
        self._data: Dict[Tuple[str, str], bytes] = {}
        self._failures: Dict[Tuple[str, str], list] = {}
        self._lock = threading.Lock()

    # ---- setup helpers ----

    def add_container(
        self,
        name: str,
        labels: Optional[dict] = None,
        state: str = "running",
        volumes: Optional[Dict[str, bytes]] = None,
        mounts: Tuple[ContainerMount, ...] = (),
        container_id: Optional[str] = None,
    ) -> ContainerRef:
        ref = ContainerRef(
            id=container_id or uuid4().hex + uuid4().hex,
            name=name,
            labels=dict(labels or {}),
            state=state,
            mounts=tuple(mounts),
        )
        self._containers[ref.id] = ref
        self._states[ref.id] = state
        for path, data in (volumes or {}).items():
            self._data[(ref.id, path)] = data
        return ref

    def set_state(self, name: str, state: str) -> None:
        self._states[self._by_name(name).id] = state

    def state(self, name: str) -> str:
        return self._states[self._by_name(name).id]

    def fail_on(self, operation: str, key: str, error: Optional[Exception] = None, times: Optional[int] = None):
        error = error or ContainerRuntimeError(operation, "injected failure", target=key)
        self._failures[(operation, key)] = [times, error]

    def count(self, operation: str, name: Optional[str] = None) -> int:
        return sum(1 for op, key in self.calls if op == operation and (name is None or key == name))

    # ---- RuntimeClient ----

    def ping(self) -> None:
        if not self.available:
            raise RuntimeUnavailableError("ping", "connection refused")

    def list_containers(self, label_filter: str) -> List[ContainerRef]:
        key, _, value = label_filter.partition("=")
        return [
            replace(ref, state=self._states[ref.id])
            for ref in self._containers.values()
            if ref.labels.get(key) == value
        ]

    def inspect(self, ref: ContainerRef) -> ContainerRef:
        self._maybe_fail("inspect", ref.name)
        return replace(self._containers[ref.id], state=self._states[ref.id])

    def pause(self, ref: ContainerRef) -> None:
        self._record("pause", ref.name)
        state = self._states[ref.id]
        if state == "paused":
            return
        if state != "running":
            raise ContainerRuntimeError("pause", f"container is {state}", target=ref.name)
        self._states[ref.id] = "paused"

    def unpause(self, ref: ContainerRef) -> None:
        self._record("unpause", ref.name)
        if self._states[ref.id] == "paused":
            self._states[ref.id] = "running"

    def stop(self, ref: ContainerRef) -> None:
        self._record("stop", ref.name)
        state = self._states[ref.id]
        if state == "paused":
            raise ContainerRuntimeError("stop", "container is paused", target=ref.name)
        if state == "running":
            self._states[ref.id] = "exited"

    def start(self, ref: ContainerRef) -> None:
        self._record("start", ref.name)
        if self._states[ref.id] != "running":
            self._states[ref.id] = "running"

    def exec(self, ref: ContainerRef, command: str, user: Optional[str] = None) -> ExecResult:
        self._record("exec", command)
        return self.exec_results.get(command, ExecResult(0, ""))

    def copy_out(self, ref: ContainerRef, path: str):
        self._record("copy_out", f"{ref.name}:{path}")
        data = self._data.get((ref.id, path), b"")
        return iter([data[i:i + 4096] for i in range(0, len(data), 4096)])

    # ---- internals ----

    def _by_name(self, name: str) -> ContainerRef:
        return next(ref for ref in self._containers.values() if ref.name == name)

    def _record(self, operation: str, key: str) -> None:
        with self._lock:
            self.calls.append((operation, key))
        self._maybe_fail(operation, key)

    def _maybe_fail(self, operation: str, key: str) -> None:
        with self._lock:
            failure = self._failures.get((operation, key))
            if failure is None:
                return
            times, error = failure
            if times is not None:
                if times <= 0:
                    return
                failure[0] = times - 1
        raise error


# =============================================================================
# Fixtures
# =============================================================================


FAST_RETRY = RetryPolicy(max_attempts=2, backoff=0, backoff_max=0)


@pytest.fixture
def cli_runner():
    """Typer CLI runner for testing commands."""
    return CliRunner()


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def archive_dir(tmp_path):
    path = tmp_path / "archives"
    path.mkdir()
    return path


@pytest.fixture
def sink(archive_dir):
    return FilesystemStorageSink(archive_dir)


@pytest.fixture
def builder(sink, tmp_path):
    return ArchiveBuilder(sink, compression="gzip", spool_dir=str(tmp_path), host="test-host")


@pytest.fixture
def make_target(fake_runtime):
    """
    Factory for BackupTargets backed by a FakeRuntime container.

    Usage:
        target = make_target("app", volumes={"/data": b"..."})
    """

    def _make_target(
        name: str = "app",
        volumes: Optional[Dict[str, bytes]] = None,
        state: str = "running",
        action: QuiesceAction = QuiesceAction.PAUSE,
        pre_hook: Optional[str] = None,
        post_hook: Optional[str] = None,
        schedule: str = "*/5 * * * *",
        retention: RetentionPolicy = RetentionPolicy(),
        retry: RetryPolicy = FAST_RETRY,
        timeouts: PhaseTimeouts = PhaseTimeouts(),
        dry_run: bool = False,
    ) -> BackupTarget:
        volumes = {"/data": b"payload " * 100} if volumes is None else volumes
        container = fake_runtime.add_container(name, state=state, volumes=volumes)
        specs = tuple(
            VolumeSpec(name=path.strip("/").replace("/", "_") or "root", path=path) for path in volumes
        )
        return BackupTarget(
            id=name,
            container=container,
            schedule=schedule,
            volumes=specs,
            action=action,
            pre_hook=HookCommand(pre_hook) if pre_hook else None,
            post_hook=HookCommand(post_hook) if post_hook else None,
            retry=PhaseRetryPolicies(hook=retry, capture=retry, resume=retry, sink=retry),
            retention=retention,
            timeouts=timeouts,
            dry_run=dry_run,
        )

    return _make_target


@pytest.fixture
def config_factory(tmp_path, monkeypatch):
    """
    Write an INI config and load it.

    Usage:
        cfg = config_factory({"archive": {"compression": "none"}})
    """
    for var in ("DOCKVAULT_CONFIG",):
        monkeypatch.delenv(var, raising=False)

    def _make_config(sections: Optional[dict] = None) -> Config:
        base = {
            "archive": {"base_path": str(tmp_path / "archives"), "spool_dir": str(tmp_path)},
            "state": {"directory": str(tmp_path / "state")},
            "backup": {"parallel_workers": "2"},
        }
        for section, values in (sections or {}).items():
            base.setdefault(section, {}).update(values)

        lines = []
        for section, values in base.items():
            lines.append(f"[{section}]")
            lines.extend(f"{key} = {value}" for key, value in values.items())
            lines.append("")
        path = tmp_path / "dockvault.conf"
        path.write_text("\n".join(lines))
        return Config(path)

    return _make_config


@pytest.fixture(autouse=True)
def reset_dockvault_logger():
    """Drop handlers that setup_logging attached during a test."""
    yield
    root = logging.getLogger("dockvault")
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.NOTSET)
