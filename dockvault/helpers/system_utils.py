"""
Host resource probes for DockVault.

Jobs spool every volume before it is archived, so the worker pool is sized
by memory first and capped by CPU count.
"""

import socket
from pathlib import Path
from typing import Optional, Union

import psutil

from .constants import RAM_WORKER_THRESHOLDS
from .logging import get_logger

logger = get_logger(__name__)

GIB = 1024 ** 3
FALLBACK_RAM_GB = 2.0


def total_ram_gb() -> float:
    """Installed memory in GiB, or a small fallback when it cannot be read."""
    try:
        return psutil.virtual_memory().total / GIB
    except (OSError, psutil.Error) as e:
        logger.warning(f"Cannot read memory size, assuming {FALLBACK_RAM_GB:g}GB: {e}")
        return FALLBACK_RAM_GB


def cpu_count() -> int:
    try:
        return psutil.cpu_count(logical=True) or 1
    except (OSError, psutil.Error):
        return 1


def free_disk_gb(path: Union[str, Path]) -> Optional[float]:
    """
    Free space on the filesystem holding ``path``.

    Returns:
        GiB available, or None if the path cannot be probed (e.g. missing)
    """
    try:
        return psutil.disk_usage(str(path)).free / GIB
    except (OSError, psutil.Error) as e:
        logger.debug(f"Cannot probe free space of {path}: {e}")
        return None


def worker_pool_size(ram_gb: Optional[float] = None, cpus: Optional[int] = None) -> int:
    """
    Number of concurrent backup jobs for ``parallel_workers = auto``.

    Args:
        ram_gb: Memory to size for; probed when omitted
        cpus: CPU count cap; probed when omitted
    """
    ram_gb = total_ram_gb() if ram_gb is None else ram_gb
    cpus = cpu_count() if cpus is None else cpus

    by_ram = next(workers for limit_gb, workers in RAM_WORKER_THRESHOLDS if ram_gb <= limit_gb)
    size = max(1, min(by_ram, cpus))
    logger.debug(f"Worker pool: {size} ({ram_gb:.1f}GB RAM, {cpus} CPUs)")
    return size


def host_name() -> str:
    """Hostname recorded in archive manifests."""
    return socket.gethostname()
