"""Process-wide observable status shared by the monitor, engine and UI.

Values are initialized when the process starts and never persisted.
Only the network monitor and the sync engine write; everyone else
subscribes.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from marlin_sync.models.schema import NetworkStatus, RateLimitInfo, SyncStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, Any, Any], None]


class StatusBoard:
    """Thread-safe holder for ``sync_status``, ``network_status`` and
    ``rate_limit_info``, plus a per-space sync status.

    Listeners receive ``(field, old, new)`` after each change. A failing
    listener is logged and does not prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listeners: List[StatusListener] = []
        self._sync_status = SyncStatus.SYNCED
        self._network_status = NetworkStatus.ONLINE
        self._rate_limit_info: Optional[RateLimitInfo] = None
        self._space_status: Dict[str, SyncStatus] = {}

    @property
    def sync_status(self) -> SyncStatus:
        return self._sync_status

    @property
    def network_status(self) -> NetworkStatus:
        return self._network_status

    @property
    def rate_limit_info(self) -> Optional[RateLimitInfo]:
        return self._rate_limit_info

    def space_status(self, space: str) -> SyncStatus:
        with self._lock:
            return self._space_status.get(space, SyncStatus.SYNCED)

    def set_sync_status(self, status: SyncStatus) -> None:
        self._set("sync_status", status)

    def set_network_status(self, status: NetworkStatus) -> None:
        self._set("network_status", status)

    def set_rate_limit_info(self, info: Optional[RateLimitInfo]) -> None:
        self._set("rate_limit_info", info)

    def set_space_status(self, space: str, status: SyncStatus) -> None:
        with self._lock:
            old = self._space_status.get(space, SyncStatus.SYNCED)
            self._space_status[space] = status
            # Overall status: syncing wins, then error, then synced
            values = set(self._space_status.values())
            if SyncStatus.SYNCING in values:
                overall = SyncStatus.SYNCING
            elif SyncStatus.ERROR in values:
                overall = SyncStatus.ERROR
            else:
                overall = SyncStatus.SYNCED
        if old != status:
            self._emit(f"space_status:{space}", old, status)
        self.set_sync_status(overall)

    def forget_space(self, space: str) -> None:
        with self._lock:
            self._space_status.pop(space, None)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "sync_status": self._sync_status.value,
                "network_status": self._network_status.value,
                "rate_limit_info": (
                    self._rate_limit_info.model_dump() if self._rate_limit_info else None
                ),
                "spaces": {k: v.value for k, v in self._space_status.items()},
            }

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _set(self, name: str, value: Any) -> None:
        attr = f"_{name}"
        with self._lock:
            old = getattr(self, attr)
            if old == value:
                return
            setattr(self, attr, value)
        self._emit(name, old, value)

    def _emit(self, name: str, old: Any, new: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(name, old, new)
            except Exception as e:
                logger.warning("Status listener failed for %s: %s", name, e)
