import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from hlfeed.data.transport import TransportHooks


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeTransport:
    """In-memory transport; tests drive the hooks by hand."""

    def __init__(self, url: str, hooks: TransportHooks, fail: bool = False, auto_open: bool = False) -> None:
        self.url = url
        self.hooks = hooks
        self.fail = fail
        self.auto_open = auto_open
        self.sent: List[Dict[str, Any]] = []
        self.opened = False
        self.closed = False
        self._lock = threading.Lock()

    def open(self) -> None:
        if self.fail:
            raise OSError("connection refused")
        self.opened = True
        if self.auto_open:
            self.hooks.on_open()

    def send(self, text: str) -> None:
        with self._lock:
            self.sent.append(json.loads(text))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.hooks.on_close()

    # --- simulation helpers ---
    def simulate_open(self) -> None:
        self.hooks.on_open()

    def simulate_message(self, payload: Any) -> None:
        raw = payload if isinstance(payload, (str, bytes)) or payload is None else json.dumps(payload)
        self.hooks.on_message(raw)

    def simulate_error(self, error: BaseException) -> None:
        self.hooks.on_error(error)

    def simulate_drop(self) -> None:
        self.closed = True
        self.hooks.on_close()

    def frames(self, method: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [frame for frame in self.sent if method is None or frame.get("method") == method]


class FakeTransportFactory:
    def __init__(self, failures: int = 0, auto_open: bool = False) -> None:
        self.failures = failures
        self.auto_open = auto_open
        self.transports: List[FakeTransport] = []

    def __call__(self, url: str, hooks: TransportHooks) -> FakeTransport:
        fail = self.failures > 0
        if fail:
            self.failures -= 1
        transport = FakeTransport(url, hooks, fail=fail, auto_open=self.auto_open)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]
