"""Core business logic modules for DockVault."""

from .archive_builder import ArchiveBuilder
from .job_coordinator import JobCoordinator
from .job_runner import JobRunner, QuiesceLease
from .notification_manager import NotificationManager
from .orchestrator import Orchestrator
from .runtime_client import DockerRuntimeClient, RuntimeClient
from .scheduler import Scheduler
from .storage import FilesystemStorageSink, StorageSink
from .target_registry import TargetRegistry

__all__ = [
    'ArchiveBuilder',
    'JobCoordinator',
    'JobRunner',
    'QuiesceLease',
    'NotificationManager',
    'Orchestrator',
    'DockerRuntimeClient',
    'RuntimeClient',
    'Scheduler',
    'FilesystemStorageSink',
    'StorageSink',
    'TargetRegistry',
]
