"""Keep-alive loop sending application-level pings while connected."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

DEFAULT_HEARTBEAT_INTERVAL = 50.0


class HeartbeatWorker:
    """Periodically invokes ``send_ping`` while ``is_connected()`` holds.

    Ticks are skipped, not failed, while disconnected or closing. :meth:`stop`
    wakes the loop out of its sleep so shutdown does not wait an interval.
    """

    def __init__(
        self,
        send_ping: Callable[[], None],
        is_connected: Callable[[], bool],
        is_closing: Callable[[], bool],
        interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        logger: Optional[logging.Logger] = None,
        name: str = "hlfeed-heartbeat",
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.send_ping = send_ping
        self.is_connected = is_connected
        self.is_closing = is_closing
        self.interval = interval
        self.logger = logger or logging.getLogger(__name__)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "HeartbeatWorker":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is threading.current_thread():
            return False
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if self.is_closing():
                break
            if not self.is_connected():
                continue
            self.send_ping()
        self.logger.debug("Heartbeat worker stopped")


__all__ = ["HeartbeatWorker", "DEFAULT_HEARTBEAT_INTERVAL"]
