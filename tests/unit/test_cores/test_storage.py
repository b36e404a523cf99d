"""Unit tests for the filesystem storage sink."""

import io
import json
from datetime import datetime, timezone

import pytest

from dockvault.cores.storage import (
    StorageSink,
    parse_archive_time,
    split_archive_suffix,
)
from dockvault.helpers.exceptions import ArchiveError


def store(sink, name, target="app", compression="gzip", data=b"archive-bytes"):
    return sink.write(name, {"target": target, "compression": compression}, io.BytesIO(data))


@pytest.mark.unit
class TestNameParsing:

    def test_parse_archive_time(self):
        assert parse_archive_time("app-20250102T030405Z") == datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert parse_archive_time("my-app-20250102T030405Z").day == 2
        assert parse_archive_time("app-latest") is None

    def test_split_suffix(self):
        assert split_archive_suffix("a.tar.gz") == "a"
        assert split_archive_suffix("a.tar") == "a"
        assert split_archive_suffix("a.manifest.json") is None


@pytest.mark.unit
class TestWrite:

    def test_write_creates_archive_and_sidecar(self, sink, archive_dir):
        location = store(sink, "app-20250101T000000Z")

        assert location == str(archive_dir / "app" / "app-20250101T000000Z.tar.gz")
        with open(location, "rb") as f:
            assert f.read() == b"archive-bytes"
        sidecar = archive_dir / "app" / "app-20250101T000000Z.manifest.json"
        assert json.loads(sidecar.read_text())["target"] == "app"
        assert sink.read_manifest(location)["compression"] == "gzip"

    def test_uncompressed_suffix(self, sink):
        assert store(sink, "app-20250101T000000Z", compression="none").endswith(".tar")

    def test_existing_archive_not_overwritten(self, sink):
        location = store(sink, "app-20250101T000000Z", data=b"first")

        with pytest.raises(ArchiveError, match="already exists"):
            store(sink, "app-20250101T000000Z", data=b"second")
        with open(location, "rb") as f:
            assert f.read() == b"first"

    def test_no_temp_files_left(self, sink, archive_dir):
        store(sink, "app-20250101T000000Z")
        assert [p.name for p in (archive_dir / "app").iterdir() if p.name.startswith(".")] == []

    def test_failed_stream_leaves_nothing(self, sink, archive_dir):
        class Broken(io.RawIOBase):
            def read(self, size=-1):
                raise OSError("device gone")

        with pytest.raises(ArchiveError):
            sink.write("app-20250101T000000Z", {"target": "app"}, Broken())
        assert list((archive_dir / "app").iterdir()) == []

    def test_satisfies_protocol(self, sink):
        assert isinstance(sink, StorageSink)


@pytest.mark.unit
class TestListDeleteOpen:

    def test_list_newest_first(self, sink):
        store(sink, "app-20250101T000000Z")
        store(sink, "app-20250103T000000Z")
        store(sink, "app-20250102T000000Z")
        store(sink, "other-20250101T000000Z", target="other")

        names = [a.name for a in sink.list("app")]

        assert names == ["app-20250103T000000Z", "app-20250102T000000Z", "app-20250101T000000Z"]
        assert sink.list_targets() == ["app", "other"]

    def test_list_unknown_target(self, sink):
        assert sink.list("nothing") == []

    def test_delete_removes_sidecar(self, sink, archive_dir):
        location = store(sink, "app-20250101T000000Z")
        sink.delete(location)
        sink.delete(location)

        assert list((archive_dir / "app").iterdir()) == []

    def test_paths_outside_base_rejected(self, sink, tmp_path):
        outside = tmp_path / "elsewhere.tar"
        outside.write_bytes(b"x")

        with pytest.raises(ArchiveError, match="outside"):
            sink.open(str(outside))
        with pytest.raises(ArchiveError):
            sink.delete(str(outside))
        assert outside.exists()

    def test_open_missing(self, sink, archive_dir):
        with pytest.raises(ArchiveError, match="cannot open"):
            sink.open(str(archive_dir / "app" / "gone.tar"))

    def test_read_manifest_missing(self, sink, archive_dir):
        location = store(sink, "app-20250101T000000Z")
        (archive_dir / "app" / "app-20250101T000000Z.manifest.json").unlink()
        assert sink.read_manifest(location) is None
