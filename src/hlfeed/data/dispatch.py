"""Bounded hand-off queue between the transport reader and callback dispatch."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Optional

DEFAULT_MAX_QUEUE_SIZE = 1024
DROP_LOG_EVERY = 100


class QueueClosed(Exception):
    """Raised by :meth:`BoundedDispatchQueue.dequeue` once the queue is closed."""


@dataclass(frozen=True)
class QueuedMessage:
    identifier: str
    payload: Any


class BoundedDispatchQueue:
    """Fixed-capacity FIFO that drops newly arriving messages when full.

    Older unprocessed messages are kept for draining. Every dropped message
    increments :attr:`dropped_count`; a warning is logged on the first drop and
    on every 100th drop after that.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_QUEUE_SIZE,
        logger: Optional[logging.Logger] = None,
        on_overflow: Optional[Callable[[int], None]] = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.logger = logger or logging.getLogger(__name__)
        self.on_overflow = on_overflow
        self._items: Deque[QueuedMessage] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._dropped = 0

    @property
    def dropped_count(self) -> int:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, identifier: str, payload: Any) -> bool:
        """Append a message without blocking; return ``False`` if it was dropped."""

        with self._cond:
            if len(self._items) < self.max_size:
                self._items.append(QueuedMessage(identifier, payload))
                self._cond.notify()
                return True
            self._dropped += 1
            dropped = self._dropped

        if dropped == 1 or dropped % DROP_LOG_EVERY == 0:
            self.logger.warning(
                "Queue full (%s). Dropped %s message(s). Callbacks may be too slow.",
                self.max_size,
                dropped,
                extra={"event": "queue_overflow", "max_size": self.max_size, "dropped": dropped},
            )
            if self.on_overflow:
                self.on_overflow(dropped)
        return False

    def dequeue(self) -> QueuedMessage:
        """Block until a message is available.

        Raises:
            QueueClosed: the queue was closed while waiting or before the call.
        """

        with self._cond:
            while not self._items and not self._closed:
                self._cond.wait()
            if self._closed:
                raise QueueClosed()
            return self._items.popleft()

    def close(self) -> None:
        """Wake every blocked consumer; subsequent dequeues raise :class:`QueueClosed`."""

        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        with self._cond:
            self._closed = False

    def drain(self) -> List[QueuedMessage]:
        """Remove and return everything currently queued."""

        with self._cond:
            items = list(self._items)
            self._items.clear()
            return items

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)


class DispatchWorker:
    """Single thread delivering queued messages to registered callbacks.

    Callbacks run one at a time in arrival order. An exception raised by one
    callback is logged and does not stop delivery to the others.

    Workers sharing a ``serial`` lock never dequeue or dispatch concurrently,
    so a retired worker still finishing a slow callback cannot overlap with
    its replacement. A retired worker exits before its next dequeue.
    """

    def __init__(
        self,
        queue: BoundedDispatchQueue,
        lookup: Callable[[str], List[Callable[[Any], None]]],
        logger: Optional[logging.Logger] = None,
        name: str = "hlfeed-dispatch",
        serial: Optional[threading.Lock] = None,
    ) -> None:
        self.queue = queue
        self.lookup = lookup
        self.logger = logger or logging.getLogger(__name__)
        self._serial = serial or threading.Lock()
        self._retired = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def thread(self) -> threading.Thread:
        return self._thread

    def start(self) -> "DispatchWorker":
        self._thread.start()
        return self

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Join the worker thread; return ``True`` if it has exited."""

        if self._thread is threading.current_thread():
            return False
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def retire(self) -> None:
        """Stop taking messages once the current callback (if any) returns."""

        self._retired.set()

    @property
    def retired(self) -> bool:
        return self._retired.is_set()

    def _run(self) -> None:
        while True:
            with self._serial:
                if self._retired.is_set():
                    break
                try:
                    message = self.queue.dequeue()
                except QueueClosed:
                    break
                self.dispatch(message)
        self.logger.debug("Dispatch worker stopped")

    def dispatch(self, message: QueuedMessage) -> None:
        callbacks = self.lookup(message.identifier)
        # Subscription removed after the message was queued.
        if not callbacks:
            return
        for callback in callbacks:
            try:
                callback(message.payload)
            except Exception as exc:
                self.logger.error(
                    "Callback error for %s: %s",
                    message.identifier,
                    exc,
                    exc_info=True,
                    extra={"event": "callback_error", "identifier": message.identifier},
                )


__all__ = [
    "BoundedDispatchQueue",
    "DispatchWorker",
    "QueuedMessage",
    "QueueClosed",
    "DEFAULT_MAX_QUEUE_SIZE",
]
