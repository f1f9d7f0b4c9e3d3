"""Connectivity Monitor.

Holds the client's belief about whether the remote encounter service is
reachable and reports how many offline envelopes are queued. The signal is
supplied from outside (browser online events, a health check, the CLI
``--offline`` flag); the core only consumes it.

Architecture:
    - Infrastructure component implementing ConnectivityPort
    - Queued count is delegated to the local store so it always reflects
      what is actually persisted
    - Reconnect listeners fire on the offline -> online edge only
"""

import logging
from threading import Lock
from typing import Callable, List, Optional

from encounter_capture.domain.ports import ConnectivityPort, LocalStorePort

logger = logging.getLogger(__name__)

ReconnectListener = Callable[[], None]


class ConnectivityMonitor(ConnectivityPort):
    """Online flag plus queued-envelope count.

    Example Usage:
        ```python
        monitor = ConnectivityMonitor(store, online=False)
        monitor.add_reconnect_listener(lambda: print("back online"))
        monitor.set_online(True)  # listener fires once
        ```
    """

    def __init__(self, store: Optional[LocalStorePort] = None, online: bool = True):
        """Initialize the monitor.

        Parameters:
            store: Local store used for the queued count (0 when absent)
            online: Initial connectivity assumption
        """
        self._store = store
        self._online = online
        self._listeners: List[ReconnectListener] = []
        self._lock = Lock()

    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def set_online(self, online: bool) -> None:
        """Update the flag; notify listeners when connectivity is restored."""
        with self._lock:
            restored = online and not self._online
            self._online = online
            listeners = list(self._listeners) if restored else []

        if restored:
            logger.info(f"Connectivity restored, {self.queued_count()} envelope(s) queued")
        elif not online:
            logger.info("Connectivity lost, saves will be kept locally")

        for listener in listeners:
            listener()

    def queued_count(self) -> int:
        if self._store is None:
            return 0
        return self._store.count()

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_reconnect_listener(self, listener: ReconnectListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
