"""
Tests for ui_utils module.

Tests the Rich-based output helpers used by the CLI.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from dockvault.helpers.ui_utils import (
    create_table,
    format_size,
    print_error,
    print_header,
    print_info,
    print_job_record,
    print_success,
    print_warning,
    prompt_confirm,
    with_spinner,
)
from dockvault.types import JobError, JobOutcome, JobRecord, JobState


def make_record(outcome=JobOutcome.SUCCEEDED, **overrides):
    started = datetime(2025, 3, 1, 2, 0, tzinfo=timezone.utc)
    values = dict(
        target_id="db",
        job_id="0123abcd",
        started_at=started,
        finished_at=started + timedelta(seconds=12),
        state=JobState(outcome.value),
        outcome=outcome,
        attempts={"capture": 1},
        captures=({"volume": "data", "path": "/data", "size": 2048,
                   "sha256": "ab" * 32, "success": True, "error": None},),
        error=None,
        archive_name="db-20250301T020000Z",
        archive_location="/backups/db/db-20250301T020000Z.tar.gz",
        transitions=(),
    )
    values.update(overrides)
    return JobRecord(**values)


@pytest.mark.unit
class TestBasicPrintFunctions:
    """Test basic print utility functions."""

    def test_print_success(self, capsys):
        print_success("Test message")
        captured = capsys.readouterr()
        assert "✓" in captured.out
        assert "Test message" in captured.out

    def test_print_error(self, capsys):
        print_error("Error message")
        captured = capsys.readouterr()
        assert "✗" in captured.out
        assert "Error message" in captured.out

    def test_print_warning(self, capsys):
        print_warning("Warning message")
        assert "⚠" in capsys.readouterr().out

    def test_print_info(self, capsys):
        print_info("Info message")
        assert "→" in capsys.readouterr().out

    def test_markup_is_escaped(self, capsys):
        print_error("label [bold]x[/bold] broken")
        assert "[bold]x[/bold]" in capsys.readouterr().out

    def test_print_header(self, capsys):
        print_header("DockVault", "Targets")
        out = capsys.readouterr().out
        assert "DockVault" in out
        assert "Targets" in out


@pytest.mark.unit
class TestTables:

    def test_create_table_columns(self):
        table = create_table("Archives", [("Name", "cyan", 30), ("Size", "green", None)])
        assert table.title == "Archives"
        assert [c.header for c in table.columns] == ["Name", "Size"]
        assert table.columns[0].width == 30

    def test_empty_title_is_omitted(self):
        assert create_table("", [("Name", "cyan", None)]).title is None


@pytest.mark.unit
class TestHelpers:

    @pytest.mark.parametrize("size,expected", [
        (None, "-"),
        (0, "0 B"),
        (512, "512 B"),
        (2048, "2.0 KB"),
        (5 * 1024 ** 3, "5.0 GB"),
    ])
    def test_format_size(self, size, expected):
        assert format_size(size) == expected

    def test_with_spinner_returns_result(self):
        assert with_spinner("Working...", lambda x, y=0: x + y, 2, y=3) == 5

    def test_prompt_confirm_delegates(self):
        with patch("dockvault.helpers.ui_utils.Confirm.ask", return_value=True) as ask:
            assert prompt_confirm("Delete?") is True
        assert ask.call_args.kwargs["default"] is False


@pytest.mark.unit
class TestPrintJobRecord:

    def test_success_record(self, capsys):
        print_job_record(make_record())
        out = capsys.readouterr().out

        assert "SUCCEEDED" in out
        assert "data" in out
        assert "2.0 KB" in out

    def test_failure_record_shows_cause(self, capsys):
        record = make_record(
            JobOutcome.FAILED,
            error=JobError("capturing", "ContainerRuntimeError", "pause failed"),
            archive_name=None,
            archive_location=None,
            captures=(),
        )
        print_job_record(record)
        out = capsys.readouterr().out

        assert "FAILED" in out
        assert "capturing" in out
        assert "pause failed" in out
