"""Network and rate-limit monitor.

Probes the remote quota endpoint on a fixed interval, independent of
user activity, and classifies connectivity:

- ``offline``: the probe failed or the credential is missing or rejected
- ``limited``: the probe succeeded but remaining quota is below the low-water mark
- ``online``: otherwise
"""
import logging
import threading
from typing import Callable, List, Optional

from marlin_sync.config import config
from marlin_sync.exceptions import UnauthenticatedError
from marlin_sync.models.schema import NetworkStatus, RateLimitInfo
from marlin_sync.remote.base import RemoteStore
from marlin_sync.state import StatusBoard

logger = logging.getLogger(__name__)

TransitionListener = Callable[[NetworkStatus, NetworkStatus], None]


class NetworkMonitor:
    """Classifies connectivity and publishes it on the status board.

    Listeners registered with ``on_transition`` receive ``(old, new)``
    whenever the classification changes; the scheduler uses this to start
    a pass when the network comes back.
    """

    def __init__(
        self,
        remote: RemoteStore,
        status: Optional[StatusBoard] = None,
        probe_interval: Optional[float] = None,
        low_water: Optional[int] = None,
    ):
        self.remote = remote
        self.status = status or StatusBoard()
        self.probe_interval = probe_interval or config.probe_interval
        self.low_water = config.rate_limit_low_water if low_water is None else low_water
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self._listeners: List[TransitionListener] = []

    def current_status(self) -> NetworkStatus:
        return self.status.network_status

    def classify(self, info: Optional[RateLimitInfo]) -> NetworkStatus:
        if info is None:
            return NetworkStatus.OFFLINE
        if info.remaining < self.low_water:
            return NetworkStatus.LIMITED
        return NetworkStatus.ONLINE

    def probe(self) -> NetworkStatus:
        """Query the quota endpoint once and update the status board."""
        try:
            info = self.remote.rate_limit()
        except UnauthenticatedError as e:
            logger.warning("Rate limit probe unauthenticated: %s", e)
            self._publish(NetworkStatus.OFFLINE)
            return NetworkStatus.OFFLINE

        if info is not None:
            self.status.set_rate_limit_info(info)
        new_status = self.classify(info)
        self._publish(new_status)
        return new_status

    def observe_rate_limit(self, info: RateLimitInfo) -> None:
        """Record quota headers seen on an ordinary remote call.

        Can lower ``online`` to ``limited`` or raise ``limited`` back to
        ``online``, but never declares the network reachable again after an
        offline classification; only a probe does that.
        """
        self.status.set_rate_limit_info(info)
        if self.current_status() == NetworkStatus.OFFLINE:
            return
        self._publish(self.classify(info))

    def report_quota_exceeded(self, reset_epoch: Optional[int] = None) -> None:
        """The engine hit the quota: report ``limited`` until the next probe."""
        current = self.status.rate_limit_info
        if current is not None:
            self.status.set_rate_limit_info(
                RateLimitInfo(
                    limit=current.limit,
                    remaining=0,
                    reset=reset_epoch if reset_epoch is not None else current.reset,
                )
            )
        if self.current_status() != NetworkStatus.OFFLINE:
            self._publish(NetworkStatus.LIMITED)

    def report_unauthenticated(self) -> None:
        """The remote rejected the credential: force ``offline``."""
        self._publish(NetworkStatus.OFFLINE)

    def on_transition(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a transition listener. Returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    # =========================================================================
    # Probe loop
    # =========================================================================

    def start(self) -> None:
        """Probe now and then every ``probe_interval`` seconds until stopped."""
        with self._lock:
            if self._running:
                return
            self._running = True
        logger.info("Network monitor started (interval %.0fs)", self.probe_interval)
        self._tick()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.info("Network monitor stopped")

    @property
    def running(self) -> bool:
        return self._running

    def _tick(self) -> None:
        try:
            self.probe()
        except Exception as e:
            logger.error("Rate limit probe failed unexpectedly: %s", e, exc_info=True)
            self._publish(NetworkStatus.OFFLINE)
        with self._lock:
            if not self._running:
                return
            self._timer = threading.Timer(self.probe_interval, self._tick)
            self._timer.daemon = True
            self._timer.start()

    def _publish(self, new_status: NetworkStatus) -> None:
        with self._lock:
            old_status = self.status.network_status
            if old_status == new_status:
                return
            self.status.set_network_status(new_status)
            listeners = list(self._listeners)
        logger.info("Network status: %s -> %s", old_status.value, new_status.value)
        for listener in listeners:
            try:
                listener(old_status, new_status)
            except Exception as e:
                logger.warning("Network transition listener failed: %s", e)
