"""Logging setup and in-process metrics for Marlin Sync.

Sync passes and remote calls are timed and counted per operation name,
with a tally of the outcome kinds each one produced (``Written``,
``VersionConflict``, ``TransientError`` ...). Nothing here is persisted.
"""
import logging
import time
import uuid
from collections import Counter, defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".marlin" / "logs"
LOG_FILE_NAME = "marlin.log"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_logging_configured = False


def _has_handler(target: logging.Logger, kind: type, exclude: Optional[type] = None) -> bool:
    return any(
        isinstance(h, kind) and not (exclude and isinstance(h, exclude))
        for h in target.handlers
    )


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Send the ``marlin_sync`` logger hierarchy to a rotating file.

    Calling it again does not stack handlers.

    Args:
        log_dir: Directory for ``marlin.log``. Defaults to ~/.marlin/logs/
        level: Logging level for the hierarchy
        max_bytes: Size at which the file is rotated
        backup_count: Rotated files to keep
        console: Also log to stderr

    Returns:
        The log directory
    """
    global _logging_configured

    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("marlin_sync")
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = []
    if not _has_handler(package_logger, RotatingFileHandler):
        handlers.append(
            RotatingFileHandler(
                log_path / LOG_FILE_NAME,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    if console and not _has_handler(package_logger, logging.StreamHandler, RotatingFileHandler):
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    _logging_configured = True
    package_logger.info("Logging to %s", log_path / LOG_FILE_NAME)
    return log_path


def is_logging_configured() -> bool:
    return _logging_configured


@dataclass
class OperationStats:
    """Running totals for one operation name."""

    calls: int = 0
    failures: int = 0
    total_ms: float = 0.0
    slowest_ms: float = 0.0
    outcomes: Counter = field(default_factory=Counter)
    last_failure: Optional[str] = None
    last_failure_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "count": self.calls,
            "success_count": self.calls - self.failures,
            "error_count": self.failures,
            "avg_duration_ms": round(self.total_ms / self.calls, 2) if self.calls else 0,
            "max_duration_ms": round(self.slowest_ms, 2),
            "outcomes": dict(self.outcomes),
            "last_error": self.last_failure,
            "last_error_time": (
                self.last_failure_at.isoformat() if self.last_failure_at else None
            ),
        }


class MetricsCollector:
    """Thread-safe counters for sync passes and remote calls."""

    def __init__(self):
        self._stats: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._lock = Lock()
        self._since = datetime.now(timezone.utc)

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> None:
        with self._lock:
            stats = self._stats[operation]
            stats.calls += 1
            stats.total_ms += duration_ms
            stats.slowest_ms = max(stats.slowest_ms, duration_ms)
            if outcome:
                stats.outcomes[outcome] += 1
            if not success:
                stats.failures += 1
                stats.last_failure = error or outcome
                stats.last_failure_at = datetime.now(timezone.utc)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: stats.as_dict() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "uptime_seconds": (datetime.now(timezone.utc) - self._since).total_seconds(),
                "total_operations": sum(s.calls for s in self._stats.values()),
                "total_errors": sum(s.failures for s in self._stats.values()),
                "operations_tracked": sorted(self._stats),
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._since = datetime.now(timezone.utc)


metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context) -> Iterator[Dict[str, Any]]:
    """Time a block, log its start and end at DEBUG, and record it.

    The yielded dict collects result fields for the END log line; an
    ``outcome`` key is also tallied in the metrics.

    Example:
        with timed_operation("sync_pass", space="work") as op:
            op["pushed"] = run_pass().pushed
    """
    tag = uuid.uuid4().hex[:8]
    info: Dict[str, Any] = {}
    where = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug("[%s] START %s (%s)", tag, operation, where)

    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield info
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        raise
    finally:
        elapsed = (time.perf_counter() - started) * 1000
        metrics.record_operation(
            operation, elapsed, error is None, error, outcome=info.get("outcome")
        )
        details = ", ".join(f"{k}={v}" for k, v in info.items())
        if error is None:
            logger.debug("[%s] END %s (%.2fms) OK %s", tag, operation, elapsed, details)
        else:
            logger.warning(
                "[%s] %s failed after %.2fms (%s): %s", tag, operation, elapsed, where, error
            )
