################################################################################
# DOCKVAULT
#
# @file:        storage.py
# @module:      dockvault.cores.storage
# @description: Storage sink protocol and the write-once filesystem sink.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Archives land at <base>/<target>/<name>.tar[.gz] with a manifest sidecar
# - An existing archive is never overwritten
# - Deleting a missing archive is a no-op so retention sweeps can repeat
################################################################################

"""Archive storage for DockVault."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, List, Mapping, Optional, Protocol, runtime_checkable

from ..helpers.constants import ARCHIVE_TIMESTAMP_FORMAT, CAPTURE_CHUNK_SIZE, MANIFEST_SIDECAR_SUFFIX
from ..helpers.exceptions import ArchiveError
from ..helpers.logging import get_logger
from ..types import StoredArchive

logger = get_logger(__name__)

ARCHIVE_SUFFIXES = ('.tar.gz', '.tar')


@runtime_checkable
class StorageSink(Protocol):
    """Where finished archives go."""

    def write(self, name: str, manifest: Mapping[str, Any], stream: BinaryIO) -> str: ...

    def list(self, target_id: str) -> List[StoredArchive]: ...

    def delete(self, location: str) -> None: ...

    def open(self, location: str) -> BinaryIO: ...


def parse_archive_time(name: str) -> Optional[datetime]:
    """Timestamp embedded in ``<target>-<YYYYmmddTHHMMSSZ>``."""
    _, _, stamp = name.rpartition('-')
    try:
        return datetime.strptime(stamp, ARCHIVE_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def split_archive_suffix(filename: str) -> Optional[str]:
    for suffix in ARCHIVE_SUFFIXES:
        if filename.endswith(suffix):
            return filename[:-len(suffix)]
    return None


class FilesystemStorageSink:
    """
    Stores archives below a base directory, one subdirectory per target.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path).expanduser()

    def write(self, name: str, manifest: Mapping[str, Any], stream: BinaryIO) -> str:
        """
        Store the archive stream under its name.

        Args:
            name: Archive name
            manifest: Archive manifest; ``target`` and ``compression`` pick the path
            stream: Readable binary stream positioned at the start

        Returns:
            Location of the stored archive

        Raises:
            ArchiveError: If the archive exists already or the write failed
        """
        target_dir = self.base_path / manifest['target']
        suffix = '.tar.gz' if manifest.get('compression') == 'gzip' else '.tar'
        final_path = target_dir / f"{name}{suffix}"
        if final_path.exists():
            raise ArchiveError(f"archive already exists: {final_path}")

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(dir=target_dir, prefix=f".{name}.", suffix='.tmp')
        except OSError as e:
            raise ArchiveError(f"cannot prepare {target_dir}: {e}")

        try:
            with os.fdopen(temp_fd, 'wb') as f:
                shutil.copyfileobj(stream, f, CAPTURE_CHUNK_SIZE)
                f.flush()
                os.fsync(f.fileno())
            # link() fails if the name exists, so a concurrent writer cannot be clobbered
            os.link(temp_path, final_path)
        except FileExistsError:
            raise ArchiveError(f"archive already exists: {final_path}")
        except OSError as e:
            raise ArchiveError(f"writing {final_path} failed: {e}")
        finally:
            if os.path.exists(temp_path):
                os.unlink(temp_path)

        sidecar = self._sidecar(final_path)
        try:
            sidecar_tmp = sidecar.with_name(f".{sidecar.name}.tmp")
            sidecar_tmp.write_text(json.dumps(manifest, indent=2), encoding='utf-8')
            os.replace(sidecar_tmp, sidecar)
        except OSError as e:
            final_path.unlink(missing_ok=True)
            raise ArchiveError(f"writing manifest {sidecar} failed: {e}")

        logger.info(f"Stored archive {final_path}", extra={'target': manifest['target']})
        return str(final_path)

    def list(self, target_id: str) -> List[StoredArchive]:
        """Stored archives of one target, newest first."""
        target_dir = self.base_path / target_id
        if not target_dir.is_dir():
            return []

        archives = []
        for path in target_dir.iterdir():
            if path.name.startswith('.') or not path.is_file():
                continue
            name = split_archive_suffix(path.name)
            if name is None:
                continue
            stat = path.stat()
            created_at = parse_archive_time(name) or datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            archives.append(StoredArchive(
                name=name,
                target=target_id,
                created_at=created_at,
                location=str(path),
                size=stat.st_size,
            ))
        archives.sort(key=lambda a: (a.created_at, a.name), reverse=True)
        return archives

    def list_targets(self) -> List[str]:
        if not self.base_path.is_dir():
            return []
        return sorted(p.name for p in self.base_path.iterdir() if p.is_dir() and not p.name.startswith('.'))

    def delete(self, location: str) -> None:
        path = self._resolve(location)
        path.unlink(missing_ok=True)
        self._sidecar(path).unlink(missing_ok=True)
        logger.debug(f"Deleted archive {path}")

    def open(self, location: str) -> BinaryIO:
        path = self._resolve(location)
        try:
            return open(path, 'rb')
        except OSError as e:
            raise ArchiveError(f"cannot open {path}: {e}")

    def read_manifest(self, location: str) -> Optional[dict]:
        """Manifest sidecar of a stored archive, if present."""
        sidecar = self._sidecar(self._resolve(location))
        if not sidecar.exists():
            return None
        try:
            return json.loads(sidecar.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            raise ArchiveError(f"unreadable manifest {sidecar}: {e}")

    # --------------- Private Methods ---------------

    def _resolve(self, location: str) -> Path:
        path = Path(location).expanduser().resolve()
        base = self.base_path.resolve()
        if base not in path.parents:
            raise ArchiveError(f"{location} is outside of {base}")
        return path

    @staticmethod
    def _sidecar(path: Path) -> Path:
        name = split_archive_suffix(path.name) or path.stem
        return path.with_name(f"{name}{MANIFEST_SIDECAR_SUFFIX}")
