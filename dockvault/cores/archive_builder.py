################################################################################
# DOCKVAULT
#
# @file:        archive_builder.py
# @module:      dockvault.cores.archive_builder
# @description: Builds, verifies and prunes integrity-checked backup archives.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Every capture is re-hashed while it is copied into the archive
# - Sink writes are retried from the finished temp file, never recaptured
# - Retention never deletes the newest archive because of its age alone
################################################################################

"""
Archive building for DockVault.

Layout of an archive named ``<target>-<YYYYmmddTHHMMSSZ>``::

    <name>/manifest.json
    <name>/volumes/<volume>.tar
"""

from __future__ import annotations

import hashlib
import io
import json
import tarfile
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from importlib import resources
from typing import IO, Any, Dict, List, Optional, Sequence

from jsonschema import Draft202012Validator

from ..helpers.constants import (
    ARCHIVE_COMPRESSIONS,
    ARCHIVE_FORMAT_VERSION,
    ARCHIVE_MANIFEST_NAME,
    ARCHIVE_TIMESTAMP_FORMAT,
    ARCHIVE_VOLUME_DIR,
    CAPTURE_CHUNK_SIZE,
)
from ..helpers.exceptions import AbortError, ArchiveError, CaptureIntegrityError
from ..helpers.logging import get_logger
from ..helpers.retry import call_with_retry
from ..helpers.system_utils import host_name
from ..types import Archive, CaptureResult, Job, RetentionPolicy
from .storage import StorageSink

logger = get_logger(__name__)


def _load_manifest_schema() -> Dict[str, Any]:
    schema_resource = resources.files("dockvault.schemas") / "manifest.v1.schema.json"
    return json.loads(schema_resource.read_text(encoding="utf-8"))


MANIFEST_VALIDATOR = Draft202012Validator(_load_manifest_schema())


def manifest_problems(manifest: Any) -> List[str]:
    """Schema violations of a manifest, empty when valid."""
    return [
        f"{'/'.join(str(p) for p in error.absolute_path) or '<root>'}: {error.message}"
        for error in sorted(MANIFEST_VALIDATOR.iter_errors(manifest), key=lambda e: list(e.absolute_path))
    ]


def archive_name(target_id: str, when: datetime) -> str:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return f"{target_id}-{when.astimezone(timezone.utc).strftime(ARCHIVE_TIMESTAMP_FORMAT)}"


class _HashingReader:
    """File wrapper that hashes and counts what tarfile reads from it."""

    def __init__(self, source: IO[bytes], stop_check=None):
        self._source = source
        self._stop_check = stop_check
        self.digest = hashlib.sha256()
        self.count = 0

    def read(self, size: int = -1) -> bytes:
        if self._stop_check:
            self._stop_check()
        data = self._source.read(size)
        self.digest.update(data)
        self.count += len(data)
        return data


class ArchiveBuilder:
    """
    Turns a job's capture results into one archive and hands it to the sink.
    """

    def __init__(
        self,
        sink: StorageSink,
        compression: str = "gzip",
        spool_dir: Optional[str] = None,
        host: Optional[str] = None,
    ):
        if compression not in ARCHIVE_COMPRESSIONS:
            raise ArchiveError(f"unsupported compression {compression!r}")
        self.sink = sink
        self.compression = compression
        self.spool_dir = spool_dir
        self.host = host or host_name()

    # --------------- Build ---------------

    def build(
        self,
        job: Job,
        captures: Sequence[CaptureResult],
        abort_event: Optional[threading.Event] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Archive:
        """
        Build the archive for ``job`` and store it.

        Raises:
            CaptureIntegrityError: If a capture changed since it was recorded
            ArchiveError: If writing the archive or storing it failed
            AbortError: If shutdown began while building
        """
        target = job.target
        name = archive_name(target.id, job.started_at)
        extra = {'target': target.id, 'job_id': job.job_id, 'phase': 'archiving'}

        def stop_check() -> None:
            if abort_event is not None and abort_event.is_set():
                raise AbortError("archive build aborted")
            if cancel_event is not None and cancel_event.is_set():
                raise ArchiveError("archive build cancelled")

        for capture in captures:
            if not capture.success or capture.spool is None:
                raise ArchiveError(f"volume {capture.volume.name} has no successful capture")

        manifest = self.build_manifest(name, job, captures)
        problems = manifest_problems(manifest)
        if problems:
            raise ArchiveError(f"manifest invalid: {'; '.join(problems)}")

        with tempfile.TemporaryFile(dir=self.spool_dir, prefix=f"{name}.", suffix=".tar") as tmp:
            mode = "w:gz" if self.compression == "gzip" else "w"
            try:
                with tarfile.open(fileobj=tmp, mode=mode) as tar:
                    self._add_bytes(tar, f"{name}/{ARCHIVE_MANIFEST_NAME}",
                                    json.dumps(manifest, indent=2).encode("utf-8"))
                    for capture, entry in zip(captures, manifest["volumes"]):
                        stop_check()
                        self._add_capture(tar, f"{name}/{entry['file']}", capture, stop_check)
            except (tarfile.TarError, OSError) as e:
                raise ArchiveError(f"writing archive {name} failed: {e}")

            archive_size = tmp.tell()
            logger.info(f"Archive {name} built ({archive_size} bytes, {len(captures)} volumes)", extra=extra)

            if target.dry_run:
                logger.info(f"Dry run: archive {name} not stored", extra=extra)
                return Archive(name=name, manifest=manifest, total_size=manifest["total_size"])

            def write() -> str:
                stop_check()
                tmp.seek(0)
                return self.sink.write(name, manifest, tmp)

            def count_attempt(attempt: int) -> None:
                job.attempts["sink"] = job.attempts.get("sink", 0) + 1

            location = call_with_retry(
                write,
                target.retry.sink,
                phase="sink",
                abort_event=abort_event,
                on_attempt=count_attempt,
                log_extra=extra,
            )

        if cancel_event is not None and cancel_event.is_set():
            # the caller gave up while the write was in flight; nobody will record this location
            self._remove_orphan(location, extra)
            raise ArchiveError(f"archive build cancelled, stored {name} removed")

        return Archive(name=name, manifest=manifest, total_size=manifest["total_size"], location=location)

    def _remove_orphan(self, location: str, extra: Dict[str, Any]) -> None:
        try:
            self.sink.delete(location)
        except (ArchiveError, OSError) as e:
            logger.error(f"Could not remove cancelled archive {location}: {e}", extra=extra)
            return
        logger.warning(f"Removed archive {location} written after the job gave up", extra=extra)

    def build_manifest(self, name: str, job: Job, captures: Sequence[CaptureResult]) -> Dict[str, Any]:
        volumes = [
            {
                "name": c.volume.name,
                "path": c.volume.path,
                "file": f"{ARCHIVE_VOLUME_DIR}/{c.volume.name}.tar",
                "size": c.size,
                "sha256": c.checksum,
            }
            for c in captures
        ]
        return {
            "format_version": ARCHIVE_FORMAT_VERSION,
            "archive": name,
            "target": job.target.id,
            "job_id": job.job_id,
            "container": {"id": job.target.container.id, "name": job.target.container.name},
            "host": self.host,
            "created_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "compression": self.compression,
            "dry_run": job.target.dry_run,
            "volumes": volumes,
            "total_size": sum(v["size"] for v in volumes),
        }

    @staticmethod
    def _add_bytes(tar: tarfile.TarFile, arcname: str, data: bytes) -> None:
        info = tarfile.TarInfo(arcname)
        info.size = len(data)
        info.mtime = int(time.time())
        info.mode = 0o644
        tar.addfile(info, io.BytesIO(data))

    @staticmethod
    def _add_capture(tar: tarfile.TarFile, arcname: str, capture: CaptureResult, stop_check) -> None:
        capture.spool.seek(0)
        reader = _HashingReader(capture.spool, stop_check)
        info = tarfile.TarInfo(arcname)
        info.size = capture.size
        info.mtime = int(time.time())
        info.mode = 0o644
        try:
            tar.addfile(info, reader)
        except OSError as e:
            # tarfile signals a source shorter than info.size this way
            if "unexpected end of data" not in str(e):
                raise
            raise CaptureIntegrityError(f"volume {capture.volume.name}: spool shorter than recorded size")

        trailing = capture.spool.read(1)
        if trailing or reader.count != capture.size:
            raise CaptureIntegrityError(
                f"volume {capture.volume.name}: size mismatch "
                f"(recorded {capture.size}, spooled {'more' if trailing else reader.count})"
            )
        if reader.digest.hexdigest() != capture.checksum:
            raise CaptureIntegrityError(
                f"volume {capture.volume.name}: sha256 mismatch "
                f"(recorded {capture.checksum}, spooled {reader.digest.hexdigest()})"
            )

    # --------------- Verify ---------------

    def verify(self, location: str) -> List[str]:
        """
        Re-read a stored archive and check manifest and checksums.

        Returns:
            List of problems (empty if the archive is intact)
        """
        problems: List[str] = []
        try:
            with self.sink.open(location) as f, tarfile.open(fileobj=f, mode="r:*") as tar:
                members = {m.name: m for m in tar.getmembers()}
                manifest_members = [n for n in members if n.count("/") == 1
                                    and n.endswith("/" + ARCHIVE_MANIFEST_NAME)]
                if len(manifest_members) != 1:
                    return [f"expected one manifest, found {len(manifest_members)}"]
                root = manifest_members[0].split("/", 1)[0]

                try:
                    manifest = json.loads(tar.extractfile(members[manifest_members[0]]).read())
                except ValueError as e:
                    return [f"manifest is not valid JSON: {e}"]
                problems.extend(f"manifest {p}" for p in manifest_problems(manifest))
                if problems:
                    return problems
                if manifest["archive"] != root:
                    problems.append(f"manifest names archive {manifest['archive']}, directory is {root}")

                expected = {f"{root}/{ARCHIVE_MANIFEST_NAME}"}
                total = 0
                for volume in manifest["volumes"]:
                    member_name = f"{root}/{volume['file']}"
                    expected.add(member_name)
                    member = members.get(member_name)
                    if member is None or not member.isfile():
                        problems.append(f"volume {volume['name']}: member {member_name} missing")
                        continue
                    digest = hashlib.sha256()
                    size = 0
                    stream = tar.extractfile(member)
                    for chunk in iter(lambda: stream.read(CAPTURE_CHUNK_SIZE), b""):
                        digest.update(chunk)
                        size += len(chunk)
                    total += size
                    if size != volume["size"]:
                        problems.append(f"volume {volume['name']}: size {size} != manifest {volume['size']}")
                    if digest.hexdigest() != volume["sha256"]:
                        problems.append(f"volume {volume['name']}: sha256 mismatch")

                if total != manifest["total_size"] and not problems:
                    problems.append(f"total size {total} != manifest {manifest['total_size']}")
                for extra_member in sorted(set(members) - expected):
                    if members[extra_member].isfile():
                        problems.append(f"unexpected member {extra_member}")
        except (tarfile.TarError, OSError, ArchiveError) as e:
            problems.append(f"cannot read archive: {e}")
        return problems

    # --------------- Retention ---------------

    def sweep(self, target_id: str, policy: RetentionPolicy, now: Optional[datetime] = None) -> List[str]:
        """
        Delete archives of ``target_id`` the retention policy no longer covers.

        Returns:
            Locations that were deleted
        """
        if not policy.enabled:
            return []
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        cutoff = now - timedelta(days=policy.max_age_days) if policy.max_age_days else None

        deleted = []
        for index, archive in enumerate(self.sink.list(target_id)):
            if index == 0:
                continue
            beyond_count = policy.keep_last is not None and index >= policy.keep_last
            too_old = cutoff is not None and archive.created_at < cutoff
            if beyond_count or too_old:
                self.sink.delete(archive.location)
                deleted.append(archive.location)
                logger.info(f"Retention removed {archive.name}",
                            extra={'target': target_id, 'operation': 'retention'})
        return deleted
