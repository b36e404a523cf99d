"""Helper modules and utilities for DockVault."""

from .config import Config, TargetDefaults, create_default_config
from .constants import VERSION, DEFAULT_CONFIG_PATHS
from .logging import get_logger, setup_logging
from .process_lock import ProcessLock
from .system_utils import free_disk_gb, host_name, worker_pool_size

__all__ = [
    'Config',
    'TargetDefaults',
    'create_default_config',
    'VERSION',
    'DEFAULT_CONFIG_PATHS',
    'get_logger',
    'setup_logging',
    'ProcessLock',
    'free_disk_gb',
    'host_name',
    'worker_pool_size',
]
