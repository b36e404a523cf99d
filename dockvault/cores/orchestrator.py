################################################################################
# DOCKVAULT
#
# @file:        orchestrator.py
# @module:      dockvault.cores.orchestrator
# @description: Wires registry, scheduler and coordinator into the daemon loop.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - One scheduling thread; only pool workers touch containers or storage
# - SIGTERM/SIGINT stop the daemon, SIGHUP reloads the configuration
# - A failed discovery keeps the previous target set
################################################################################

"""
Daemon wiring for DockVault.
"""

from __future__ import annotations

import signal
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..helpers.constants import LOW_DISK_WARNING_GB
from ..helpers.exceptions import ConfigError, ContainerRuntimeError, DockVaultError
from ..helpers.logging import get_logger
from ..helpers.process_lock import ProcessLock
from ..helpers.system_utils import free_disk_gb
from ..types import Admission, BackupTarget, JobRecord
from .archive_builder import ArchiveBuilder
from .job_coordinator import JobCoordinator
from .notification_manager import NotificationManager
from .runtime_client import DockerRuntimeClient, RuntimeClient
from .scheduler import Scheduler
from .storage import FilesystemStorageSink, StorageSink
from .target_registry import TargetRegistry

logger = get_logger(__name__)

MIN_SLEEP_SECONDS = 0.05


class Orchestrator:
    """
    Holds one registry, scheduler and coordinator for the process lifetime.
    """

    def __init__(
        self,
        config,
        runtime: RuntimeClient,
        sink: StorageSink,
        notifier: Optional[NotificationManager] = None,
        coordinator: Optional[JobCoordinator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            config: Config instance
            runtime: Container runtime client
            sink: Archive storage
            notifier: Optional notification manager
            coordinator: Pre-built coordinator (tests); built from config otherwise
            clock: Returns the current aware datetime
        """
        self.config = config
        self.runtime = runtime
        self.sink = sink
        self.notifier = notifier
        self._now = clock or (lambda: datetime.now(timezone.utc))

        self.builder = ArchiveBuilder(sink, compression=config.archive_compression, spool_dir=config.spool_dir)
        self.registry = TargetRegistry.from_config(runtime, config)
        self.scheduler = Scheduler(config.timezone)
        self.coordinator = coordinator or JobCoordinator.from_config(
            config, runtime, self.builder, notifier, clock=clock
        )

        self._stop_event = threading.Event()
        self._reload_requested = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._next_discovery = 0.0
        self._shutdown_done = False

    @classmethod
    def from_config(cls, config) -> Orchestrator:
        """Build an orchestrator against the local Docker daemon and filesystem storage."""
        runtime = DockerRuntimeClient.from_config(config)
        sink = FilesystemStorageSink(config.archive_base)
        return cls(config, runtime, sink, NotificationManager(config))

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # --------------- Lifecycle ---------------

    def start(self) -> None:
        """
        Check the runtime, discover targets and start the scheduling thread.

        Raises:
            RuntimeUnavailableError: If the runtime cannot be reached
        """
        self.runtime.ping()
        self._check_free_space()
        self.discover()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="dockvault-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started with {len(self.scheduler.schedules)} scheduled target(s)")

    def _check_free_space(self) -> None:
        for label, path in (("archive storage", self.config.archive_base), ("spool directory", self.config.spool_dir)):
            if not path:
                continue
            free = free_disk_gb(path)
            if free is not None and free < LOW_DISK_WARNING_GB:
                logger.warning(f"Only {free:.2f}GB free in {label} {path}")

    def run_forever(self, process_lock: Optional[ProcessLock] = None) -> None:
        """Run as daemon until SIGTERM/SIGINT."""
        with process_lock or ProcessLock():
            logger.info("Starting DockVault daemon")
            try:
                self.install_signal_handlers()
                self.start()
                while not self._stop_event.is_set():
                    self._stop_event.wait(1.0)
            finally:
                self.shutdown()
                logger.info("DockVault daemon stopped")

    def stop(self) -> None:
        """Ask the scheduling loop to end; jobs keep running."""
        self._stop_event.set()

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop scheduling and shut down the coordinator.

        Returns:
            True if all jobs finished before the timeout
        """
        if self._shutdown_done:
            return True
        self._shutdown_done = True
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        return self.coordinator.shutdown(timeout)

    # --------------- Signals ---------------

    def install_signal_handlers(self) -> None:
        """Must be called from the main thread."""
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGHUP, self._handle_reload)

    def _handle_signal(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self._stop_event.set()

    def _handle_reload(self, signum, frame):
        logger.info("Received SIGHUP, reloading configuration...")
        self._reload_requested.set()

    def reload_config(self) -> None:
        """Re-read the config file; takes effect with the next discovery pass."""
        try:
            self.config.reload()
        except ConfigError as e:
            logger.error(f"Reload failed, keeping previous configuration: {e}")
            return
        self.registry.label_prefix = self.config.label_prefix
        timezone_name = self.config.timezone
        if timezone_name != str(self.scheduler.tz):
            try:
                self.scheduler = Scheduler(timezone_name)
            except ConfigError as e:
                logger.error(f"Keeping timezone {self.scheduler.tz}: {e}")
        self._next_discovery = 0.0
        logger.info(f"Configuration reloaded from {self.config.config_file}")

    # --------------- Scheduling loop ---------------

    def discover(self) -> List[BackupTarget]:
        """Refresh targets and schedules; on failure the previous set stays active."""
        self._next_discovery = time.monotonic() + max(1.0, self.config.discovery_interval)
        try:
            targets = self.registry.discover()
        except (ContainerRuntimeError, ConfigError) as e:
            logger.error(f"Discovery failed, keeping {len(self.registry.targets)} known target(s): {e}")
            return list(self.registry.targets.values())
        self.scheduler.sync(targets, self._now())
        return targets

    def tick(self) -> List[Admission]:
        """One loop iteration: reload, discover when due, dispatch due fires."""
        if self._reload_requested.is_set():
            self._reload_requested.clear()
            self.reload_config()
        if time.monotonic() >= self._next_discovery:
            self.discover()

        admissions = []
        for target, fire_time in self.scheduler.next_events(self._now()):
            logger.debug(f"Fire for {target.id} at {fire_time.isoformat()}", extra={'target': target.id})
            admissions.append(self.coordinator.on_trigger(target))
        return admissions

    def sleep_seconds(self) -> float:
        candidates = [
            self.config.tick_seconds,
            self._next_discovery - time.monotonic(),
        ]
        until_fire = self.scheduler.seconds_until_next(self._now())
        if until_fire is not None:
            candidates.append(until_fire)
        return max(MIN_SLEEP_SECONDS, min(candidates))

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Scheduler tick failed: {e}")
            self._stop_event.wait(self.sleep_seconds())
        logger.debug("Scheduler loop stopped")

    # --------------- Foreground ---------------

    def backup_now(self, target_id: str, dry_run: bool = False, timeout: Optional[float] = None) -> JobRecord:
        """
        Discover and run one backup of ``target_id`` in the foreground.

        Raises:
            ConfigError: If the target is unknown or its labels are invalid
            DockVaultError: If a job for the target is already running
        """
        self.discover()
        target = self.registry.get(target_id)
        if target is None:
            problem = self.registry.errors.get(target_id)
            if problem:
                raise ConfigError(problem)
            raise ConfigError("no such backup target", target=target_id)
        if dry_run and not target.dry_run:
            target = replace(target, dry_run=True)
        record = self.coordinator.run_now(target, timeout=timeout)
        if record is None:
            raise DockVaultError(f"A backup of '{target_id}' is already running")
        return record
