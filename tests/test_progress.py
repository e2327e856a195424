"""
Tests for ProgressReporter throttling and monotonicity.
"""

from datetime import datetime

import pytest

from aims_design_backend.models import TaskRecord, TaskStatus
from aims_design_backend.progress import ProgressReporter
from aims_design_backend.stores import StoreUnavailableError


@pytest.fixture
def record():
    now = datetime.utcnow()
    return TaskRecord(task_id="task1", status=TaskStatus.PROCESSING, progress=0, message="ready", created_at=now, updated_at=now)


@pytest.fixture
def reporter(status_store, record, clock):
    return ProgressReporter(status_store, record, ttl=60, min_interval=0.3, clock=clock)


class TestThrottling:
    """Tests for write spacing."""

    def test_first_report_always_written(self, reporter, status_store):
        """The first report goes to the store regardless of the interval."""
        assert reporter.report(0, "starting") is True
        assert len(status_store.puts) == 1

    def test_reports_inside_interval_are_held_back(self, reporter, status_store, clock):
        """Reports closer than the interval are kept in memory only."""
        reporter.report(1, "a")
        clock.advance(0.1)
        assert reporter.report(5, "b") is False
        clock.advance(0.1)
        assert reporter.report(10, "c") is False
        assert len(status_store.puts) == 1

        clock.advance(0.2)
        assert reporter.report(15, "d") is True
        assert status_store.puts[-1].progress == 15
        assert status_store.puts[-1].message == "d"

    def test_held_back_value_is_kept_in_memory(self, reporter, clock):
        """A throttled report still updates the in-memory record."""
        reporter.report(1, "a")
        clock.advance(0.05)
        reporter.report(42, "b")
        assert reporter.record.progress == 42
        assert reporter.record.message == "b"

    def test_hundred_always_written(self, reporter, status_store, clock):
        """A report of 100 bypasses the throttle."""
        reporter.report(1, "a")
        clock.advance(0.01)
        assert reporter.report(100, "done") is True
        assert status_store.puts[-1].progress == 100
        assert status_store.puts[-1].status == TaskStatus.PROCESSING


class TestMonotonicity:
    """Tests for clamping and regression handling."""

    def test_regressing_value_discarded(self, reporter, status_store, clock):
        """Lower values than the current progress are dropped."""
        reporter.report(50, "half")
        clock.advance(1)
        assert reporter.report(20, "back") is False
        assert reporter.record.progress == 50
        assert reporter.record.message == "half"
        assert len(status_store.puts) == 1

    def test_values_are_clamped(self, reporter, clock):
        """Values outside 0-100 are clamped."""
        reporter.report(-10, "negative")
        assert reporter.record.progress == 0
        clock.advance(1)
        reporter.report(250, "overflow")
        assert reporter.record.progress == 100

    def test_empty_message_keeps_previous(self, reporter, clock):
        """A report without a message keeps the last one."""
        reporter.report(10, "drawing")
        clock.advance(1)
        reporter.report(20)
        assert reporter.record.message == "drawing"


class TestTerminalWrites:
    """Tests for complete and fail."""

    def test_complete_bypasses_throttle(self, reporter, status_store, clock):
        """Completion is written immediately."""
        reporter.report(10, "a")
        record = reporter.complete("/api/design/download/task1?file_name=x.psd")
        assert record.status == TaskStatus.COMPLETED
        assert record.progress == 100
        assert status_store.puts[-1].download_url.endswith("x.psd")
        assert len(status_store.puts) == 2

    def test_fail_keeps_progress(self, reporter, status_store, clock):
        """Failure keeps the last progress value."""
        reporter.report(30, "a")
        record = reporter.fail("Generation failed: boom")
        assert record.status == TaskStatus.FAILED
        assert record.progress == 30
        assert status_store.get("task1").message == "Generation failed: boom"

    def test_reports_after_terminal_are_ignored(self, reporter, status_store, clock):
        """Nothing overwrites a terminal record."""
        reporter.fail("Generation failed: boom")
        clock.advance(1)
        assert reporter.report(100, "late") is False
        assert status_store.get("task1").status == TaskStatus.FAILED

    def test_progress_write_failure_does_not_raise(self, reporter, status_store, monkeypatch):
        """Intermediate write failures are absorbed."""

        def unavailable(*args, **kwargs):
            raise StoreUnavailableError("down")

        monkeypatch.setattr(status_store, "put", unavailable)
        assert reporter.report(10, "a") is False
        assert reporter.record.progress == 10

    def test_terminal_write_failure_propagates(self, reporter, status_store, monkeypatch):
        """Terminal write failures reach the background unit."""

        def unavailable(*args, **kwargs):
            raise StoreUnavailableError("down")

        monkeypatch.setattr(status_store, "put", unavailable)
        with pytest.raises(StoreUnavailableError):
            reporter.complete("/x")
