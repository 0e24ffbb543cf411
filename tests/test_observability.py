"""Tests for exceptions, logging setup and operation metrics."""
import logging
from logging.handlers import RotatingFileHandler

import pytest

from marlin_sync.exceptions import (
    ErrorCode,
    NoteNotFoundError,
    QuotaExceededError,
    StorageError,
    SyncError,
    TransientNetworkError,
)
from marlin_sync.observability import MetricsCollector, configure_logging, metrics, timed_operation


class TestExceptions:
    """Structured error hierarchy."""

    def test_to_dict(self):
        err = NoteNotFoundError("abc")

        data = err.to_dict()

        assert data["error"] == "NoteNotFoundError"
        assert data["code"] == ErrorCode.NOTE_NOT_FOUND.value
        assert data["details"] == {"note_id": "abc"}
        assert str(err).startswith("[NOTE_NOT_FOUND]")

    def test_sync_errors_share_a_base(self):
        assert issubclass(TransientNetworkError, SyncError)
        assert TransientNetworkError("timeout", operation="fetch").code == ErrorCode.SYNC_TRANSIENT

    def test_storage_error_keeps_cause(self):
        cause = RuntimeError("disk full")
        err = StorageError("write failed", operation="upsert", original_error=cause)
        assert err.details["original_error"] == "disk full"

    def test_quota_reset_in_details(self):
        import datetime

        reset = datetime.datetime(2024, 5, 1, tzinfo=datetime.timezone.utc)
        assert QuotaExceededError(reset_at=reset).details["reset_at"] == reset.isoformat()


class TestMetrics:
    """Timing and counting of operations."""

    def test_collector_records_success_and_error(self):
        collector = MetricsCollector()
        collector.record_operation("fetch", 10.0, True)
        collector.record_operation("fetch", 30.0, False, "boom")

        stats = collector.get_metrics()["fetch"]

        assert stats["count"] == 2
        assert stats["error_count"] == 1
        assert stats["avg_duration_ms"] == 20.0
        assert stats["last_error"] == "boom"
        assert collector.get_summary()["total_errors"] == 1

    def test_outcomes_are_tallied(self):
        collector = MetricsCollector()
        collector.record_operation("remote_call", 1.0, True, outcome="Written")
        collector.record_operation("remote_call", 2.0, False, outcome="TransientError")

        stats = collector.get_metrics()["remote_call"]

        assert stats["outcomes"] == {"Written": 1, "TransientError": 1}
        assert stats["last_error"] == "TransientError"

    def test_timed_operation_records_failures(self):
        metrics.reset()

        with timed_operation("sync_pass", space="work") as op:
            op["pushed"] = 1
        with pytest.raises(ValueError):
            with timed_operation("sync_pass", space="work"):
                raise ValueError("bad")

        stats = metrics.get_metrics()["sync_pass"]
        assert (stats["success_count"], stats["error_count"]) == (1, 1)


def test_configure_logging_adds_rotating_handler(tmp_path):
    log_dir = configure_logging(log_dir=tmp_path / "logs", console=False)
    root = logging.getLogger("marlin_sync")
    try:
        assert (log_dir / "marlin.log").exists()
        assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
    finally:
        for handler in list(root.handlers):
            if isinstance(handler, RotatingFileHandler):
                root.removeHandler(handler)
                handler.close()
