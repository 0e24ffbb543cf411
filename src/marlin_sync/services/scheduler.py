"""Background sync scheduling.

Passes run on a fixed interval, when the network comes back from
offline, and on request (the fast path after a local edit). The
scheduler has an explicit lifecycle: nothing runs before ``start()``
or after ``stop()``.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional

from marlin_sync.config import config
from marlin_sync.models.schema import NetworkStatus, SyncResult
from marlin_sync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class AutoSyncScheduler:
    """Drives a SyncEngine from timers and network transitions."""

    def __init__(
        self,
        engine: SyncEngine,
        monitor=None,
        interval: Optional[float] = None,
        limited_interval_factor: Optional[int] = None,
    ):
        """Initialize the scheduler.

        Args:
            engine: The engine whose passes are scheduled.
            monitor: Optional NetworkMonitor; offline -> online/limited
                transitions trigger a pass.
            interval: Seconds between passes while online.
            limited_interval_factor: Interval multiplier while limited.
        """
        self.engine = engine
        self.monitor = monitor
        self.interval = interval or config.sync_interval
        self.limited_interval_factor = (
            limited_interval_factor or config.limited_interval_factor
        )
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self._active_space: Optional[str] = None
        self._workers: List[threading.Thread] = []
        self._remove_listener: Optional[Callable[[], None]] = None
        self.last_results: Dict[str, SyncResult] = {}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_space(self) -> Optional[str]:
        return self._active_space

    def current_interval(self) -> float:
        """Seconds until the next scheduled pass; stretched while limited."""
        if self.engine.status.network_status == NetworkStatus.LIMITED:
            return self.interval * self.limited_interval_factor
        return self.interval

    def start(self, run_now: bool = True) -> None:
        """Begin scheduling. With ``run_now`` a pass starts immediately."""
        with self._lock:
            if self._running:
                return
            self._running = True
            if self.monitor is not None:
                self._remove_listener = self.monitor.on_transition(self._on_transition)
            self._schedule()
        logger.info("Auto-sync started (interval %.0fs)", self.interval)
        if run_now:
            self.request_sync()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Cancel timers and running passes, then wait for workers."""
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._remove_listener is not None:
                self._remove_listener()
                self._remove_listener = None
            workers = list(self._workers)
        self.engine.cancel_all()
        for worker in workers:
            worker.join(timeout)
        logger.info("Auto-sync stopped")

    def set_active_space(self, space: Optional[str]) -> None:
        """Switch the space in focus. Passes of other spaces are cancelled."""
        with self._lock:
            previous = self._active_space
            self._active_space = space
        if previous == space:
            return
        cancelled = self.engine.cancel_all(except_space=space)
        if cancelled:
            logger.info("Switched to %s; cancelled passes for %s", space, ", ".join(cancelled))
        if space is not None and self._running:
            self.request_sync(space)

    def request_sync(self, space: Optional[str] = None) -> Optional[threading.Thread]:
        """Run a pass in the background soon.

        Defaults to the active space, or every known space when none is
        active. Returns the worker thread, or None when not running.
        """
        if not self._running:
            return None
        worker = threading.Thread(
            target=self.run_once, args=(space,), name="marlin-sync", daemon=True
        )
        with self._lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(worker)
        worker.start()
        return worker

    def run_once(self, space: Optional[str] = None) -> Dict[str, SyncResult]:
        """Run passes synchronously for ``space`` or the default targets."""
        target = space or self._active_space
        try:
            if target is not None:
                results = {target: self.engine.trigger_sync(target)}
            else:
                results = self.engine.sync_all()
        except Exception as e:
            logger.error("Scheduled sync failed: %s", e, exc_info=True)
            return {}
        with self._lock:
            self.last_results.update(results)
        return results

    def _schedule(self) -> None:
        delay = self.current_interval()
        self._timer = threading.Timer(delay, self._on_timer)
        self._timer.daemon = True
        self._timer.start()

    def _on_timer(self) -> None:
        if not self._running:
            return
        self.run_once()
        with self._lock:
            if self._running:
                self._schedule()

    def _on_transition(self, old: NetworkStatus, new: NetworkStatus) -> None:
        if old == NetworkStatus.OFFLINE and new in (NetworkStatus.ONLINE, NetworkStatus.LIMITED):
            logger.info("Network back (%s); triggering sync", new.value)
            self.request_sync()
