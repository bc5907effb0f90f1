"""Reconnection supervisor driving transport re-establishment with backoff."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional


@dataclass
class BackoffConfig:
    """Configuration for reconnection backoff.

    The delay before attempt ``n`` (starting at 0) is
    ``min(initial * factor ** n, maximum)`` plus up to ``jitter`` seconds.
    """

    initial: float = 1.0
    maximum: float = 30.0
    factor: float = 2.0
    jitter: float = 0.0

    def delay(self, attempt: int) -> float:
        # Cap the exponent so large attempt counts cannot overflow the float.
        exponent = min(attempt, 64)
        base = min(self.initial * (self.factor ** exponent), self.maximum)
        if self.jitter > 0:
            base += random.uniform(0, self.jitter)
        return base


class SupervisorState(str, Enum):
    IDLE = "idle"
    BACKING_OFF = "backing_off"
    ATTEMPTING = "attempting"
    STOPPED = "stopped"


class ReconnectionSupervisor:
    """Retries ``establish`` until it succeeds or the client starts closing.

    At most one retry loop runs at a time. A :meth:`request` arriving while the
    loop is active is remembered, and the loop runs again after a successful
    attempt instead of exiting, so a disconnect that races a reconnect is not
    lost. The ``attempt`` counter belongs to the loop and restarts at zero for
    every run.
    """

    def __init__(
        self,
        establish: Callable[[], None],
        is_closing: Callable[[], bool],
        backoff: Optional[BackoffConfig] = None,
        logger: Optional[logging.Logger] = None,
        metrics_callback: Optional[Callable[[str, Dict[str, float]], None]] = None,
    ) -> None:
        self.establish = establish
        self.is_closing = is_closing
        self.backoff = backoff or BackoffConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.metrics_callback = metrics_callback

        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._active = False
        self._rerun = False
        self._state = SupervisorState.IDLE

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def running(self) -> bool:
        with self._lock:
            return self._active

    def request(self) -> bool:
        """Start a retry loop; return ``False`` if one is already running."""

        with self._lock:
            if self._active:
                self._rerun = True
                return False
            self._active = True
            self._rerun = False
            self._wake.clear()
            self._state = SupervisorState.IDLE
            self._thread = threading.Thread(target=self._run, name="hlfeed-reconnect", daemon=True)
            self._thread.start()
        return True

    def stop(self) -> None:
        """Wake the loop so it observes the closing flag and exits."""

        self._wake.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _run(self) -> None:
        attempt = 0
        try:
            while True:
                if self.is_closing():
                    break

                delay = self.backoff.delay(attempt)
                self._state = SupervisorState.BACKING_OFF
                self.logger.info(
                    "Reconnecting in %.1fs (attempt %s)",
                    delay,
                    attempt + 1,
                    extra={"event": "reconnect", "attempt": attempt + 1, "sleep_seconds": delay},
                )
                self._emit_metrics("reconnect_attempt", {"attempt": float(attempt + 1), "delay_seconds": delay})
                self._wake.wait(delay)
                if self.is_closing():
                    break

                self._state = SupervisorState.ATTEMPTING
                try:
                    self.establish()
                except Exception as exc:
                    self.logger.warning(
                        "Reconnect failed: %s",
                        exc,
                        extra={"event": "reconnect_failed", "attempt": attempt + 1},
                    )
                    attempt += 1
                    continue

                self.logger.info(
                    "Reconnected after %s attempt(s)",
                    attempt + 1,
                    extra={"event": "reconnected", "attempts": attempt + 1},
                )
                with self._lock:
                    if not self._rerun or self.is_closing():
                        self._active = False
                        self._state = SupervisorState.IDLE
                        return
                    self._rerun = False
                attempt = 0
        finally:
            with self._lock:
                if self._active:
                    self._active = False
                    self._state = SupervisorState.STOPPED

    def _emit_metrics(self, name: str, values: Dict[str, float]) -> None:
        if not self.metrics_callback:
            return
        try:
            self.metrics_callback(name, values)
        except Exception as exc:  # pragma: no cover - external callback safety
            self.logger.debug("Metric callback failed for %s: %s", name, exc)


__all__ = ["BackoffConfig", "ReconnectionSupervisor", "SupervisorState"]
