"""Managed websocket client for Hyperliquid real-time channels.

The client keeps one persistent connection open, routes every inbound frame to
the callbacks registered for its channel, and survives connection loss. Work
is split over a few threads:

* the transport reader only decodes frames and enqueues them (never blocks on
  caller code),
* a single dispatch worker runs caller callbacks in arrival order,
* a heartbeat worker sends ``{"method": "ping"}`` while connected,
* a reconnection supervisor re-establishes the connection with exponential
  backoff after an unexpected disconnect. Subscriptions are replayed by the
  open handler, so callers keep their handles across reconnects.
"""
from __future__ import annotations

import json
import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple

from hlfeed.errors import WebSocketError

from .channels import exclusive_type, message_identifier, subscription_identifier
from .dispatch import DEFAULT_MAX_QUEUE_SIZE, BoundedDispatchQueue, DispatchWorker
from .heartbeat import DEFAULT_HEARTBEAT_INTERVAL, HeartbeatWorker
from .reconnect import BackoffConfig, ReconnectionSupervisor
from .registry import MessageCallback, SubscriptionRegistry
from .transport import Frame, Transport, TransportFactory, TransportHooks, resolve_endpoint, websocket_transport_factory

if TYPE_CHECKING:
    from hlfeed.infra.config import StreamConfig

LIFECYCLE_EVENTS = ("open", "close", "error")
CONNECTION_ESTABLISHED = "Websocket connection established"


class ConnectionState(str, Enum):
    """Connection state of :class:`StreamClient`."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class StreamClient:
    """Subscription client for the Hyperliquid websocket feed.

    Usage::

        client = StreamClient(testnet=True)
        client.on("open", lambda: print("connected"))
        handle = client.subscribe({"type": "l2Book", "coin": "ETH"}, print)
        ...
        client.unsubscribe(handle)
        client.close()

    Subscribing on a disconnected client connects it; subscriptions made before
    the connection opens are sent once it does.
    """

    def __init__(
        self,
        testnet: bool = False,
        base_url: Optional[str] = None,
        websocket_url: Optional[str] = None,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        reconnect: bool = True,
        backoff: Optional[BackoffConfig] = None,
        join_timeout: float = 5.0,
        open_timeout: float = 10.0,
        transport_factory: Optional[TransportFactory] = None,
        metrics_callback: Optional[Callable[[str, Dict[str, float]], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.endpoint = resolve_endpoint(testnet=testnet, base_url=base_url, websocket_url=websocket_url)
        self.url = self.endpoint.websocket_url
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_enabled = reconnect
        self.join_timeout = join_timeout
        self.metrics_callback = metrics_callback
        self.logger = logger or logging.getLogger(__name__)
        self._transport_factory = transport_factory or websocket_transport_factory(open_timeout=open_timeout)

        self._lock = threading.RLock()
        # Orders registry mutations with the control frames they trigger.
        self._control_lock = threading.Lock()
        # Held by the dispatch worker around each dequeue and dispatch.
        self._dispatch_lock = threading.Lock()
        self._registry = SubscriptionRegistry(lock=self._lock)
        self._pending: List[Tuple[str, Dict[str, Any]]] = []
        self._queue = BoundedDispatchQueue(
            max_size=max_queue_size,
            logger=self.logger.getChild("queue"),
            on_overflow=lambda dropped: self._emit_metrics("queue_overflow", {"dropped": float(dropped)}),
        )
        self._supervisor = ReconnectionSupervisor(
            establish=self._establish_connection,
            is_closing=self._is_closing,
            backoff=backoff,
            logger=self.logger.getChild("reconnect"),
            metrics_callback=metrics_callback,
        )

        self._transport: Optional[Transport] = None
        self._generation = 0
        self._state = ConnectionState.DISCONNECTED
        self._closing = False
        self._dispatcher: Optional[DispatchWorker] = None
        self._heartbeat: Optional[HeartbeatWorker] = None
        self._lifecycle: Dict[str, Callable[..., None]] = {}

    @classmethod
    def from_config(cls, config: "StreamConfig", **kwargs: Any) -> "StreamClient":
        """Build a client from a :class:`~hlfeed.infra.config.StreamConfig`."""

        return cls(
            testnet=config.testnet,
            base_url=config.base_url,
            websocket_url=config.websocket_url,
            max_queue_size=config.max_queue_size,
            heartbeat_interval=config.heartbeat_interval,
            reconnect=config.reconnect,
            backoff=config.backoff,
            join_timeout=config.join_timeout,
            open_timeout=config.open_timeout,
            **kwargs,
        )

    # --- Public API -------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self.is_connected()

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def dropped_message_count(self) -> int:
        """Number of messages discarded because the dispatch queue was full."""

        return self._queue.dropped_count

    def subscriptions(self) -> Dict[str, int]:
        """Return active identifiers with their subscriber counts."""

        return self._registry.identifiers()

    def on(self, event: str, callback: Callable[..., None]) -> None:
        """Register the lifecycle callback for ``open``, ``close`` or ``error``.

        Only one callback is kept per event; the last registration wins.
        ``error`` callbacks receive the exception, the others no arguments.
        """

        if event not in LIFECYCLE_EVENTS:
            raise ValueError(f"Unknown lifecycle event {event!r}; expected one of {', '.join(LIFECYCLE_EVENTS)}")
        self._lifecycle[event] = callback

    def connect(self) -> "StreamClient":
        """Open the connection and start the dispatch and heartbeat workers.

        Does nothing while a connection is open, being opened, or being
        re-established by the reconnection supervisor.

        Raises:
            WebSocketError: the connection could not be established.
        """

        with self._lock:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                return self
            if self._supervisor.running and not self._closing:
                return self
            self._closing = False
            self._state = ConnectionState.CONNECTING
        self._queue.reopen()

        try:
            self._establish_connection()
        except Exception as exc:
            self.logger.error(
                "Failed to connect to %s: %s", self.url, exc,
                extra={"event": "connect_failed", "url": self.url},
            )
            self._fire("error", exc)
            raise WebSocketError(f"Failed to connect to {self.url}: {exc}") from exc

        self._start_workers()
        return self

    def subscribe(self, subscription: Mapping[str, Any], callback: MessageCallback) -> int:
        """Register ``callback`` for a channel and return a subscription handle.

        Raises:
            InvalidChannelError: the subscription type has no identifier rule.
            TypeError: ``callback`` is not callable.
        """

        if not callable(callback):
            raise TypeError("callback must be callable")

        spec = dict(subscription) if isinstance(subscription, Mapping) else subscription
        with self._control_lock:
            with self._lock:
                handle = self._registry.register(spec, callback)
                identifier = self._registry.identifier_for(handle)
                first = self._registry.subscriber_count(identifier) == 1
                connected = self._state is ConnectionState.CONNECTED
                if first and not connected:
                    self._pending.append((identifier, spec))
                should_connect = (
                    not connected
                    and self._transport is None
                    and self._state is ConnectionState.DISCONNECTED
                    and not self._supervisor.running
                )
            if first and connected:
                self.send_subscribe(spec)

        self.logger.info(
            "Subscribed to %s", identifier,
            extra={"event": "subscription", "identifier": identifier, "handle": handle, "pending": not connected},
        )
        if should_connect:
            self._auto_connect()
        return handle

    def unsubscribe(self, handle: int) -> None:
        """Remove a subscription; the channel is unsubscribed when its last handle goes."""

        with self._control_lock:
            with self._lock:
                removed = self._registry.unregister(handle)
                if removed is None:
                    return
                identifier = subscription_identifier(removed)
                self._pending = [entry for entry in self._pending if entry[0] != identifier]
                connected = self._state is ConnectionState.CONNECTED
            if connected:
                self.send_unsubscribe(removed)

        self.logger.info(
            "Unsubscribed from %s", identifier,
            extra={"event": "unsubscription", "identifier": identifier, "handle": handle},
        )

    def close(self) -> None:
        """Stop all workers and close the connection without reconnecting.

        Safe to call repeatedly and from any thread, including callbacks.
        """

        with self._lock:
            self._closing = True
            self._state = ConnectionState.CLOSING
            transport, self._transport = self._transport, None
            heartbeat, self._heartbeat = self._heartbeat, None
            dispatcher, self._dispatcher = self._dispatcher, None

        if heartbeat:
            heartbeat.stop()
        self._supervisor.stop()
        self._supervisor.join(self.join_timeout)
        if dispatcher:
            dispatcher.retire()
        self._queue.close()
        if dispatcher and dispatcher.thread is not threading.current_thread():
            if not dispatcher.join(self.join_timeout):
                self.logger.warning(
                    "Dispatch worker did not stop within %.1fs", self.join_timeout,
                    extra={"event": "dispatch_join_timeout"},
                )
        self._queue.drain()
        if transport:
            self._close_transport(transport)

        with self._lock:
            self._state = ConnectionState.DISCONNECTED

    def __enter__(self) -> "StreamClient":
        return self.connect()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # --- Outbound frames --------------------------------------------------
    def send_subscribe(self, subscription: Mapping[str, Any]) -> bool:
        return self._send_json({"method": "subscribe", "subscription": dict(subscription)})

    def send_unsubscribe(self, subscription: Mapping[str, Any]) -> bool:
        return self._send_json({"method": "unsubscribe", "subscription": dict(subscription)})

    def send_ping(self) -> bool:
        return self._send_json({"method": "ping"})

    def _send_json(self, payload: Dict[str, Any]) -> bool:
        transport = self._transport
        if transport is None:
            return False
        try:
            transport.send(json.dumps(payload))
        except Exception as exc:
            # The next disconnect/reconnect cycle replays whatever this lost.
            self.logger.warning(
                "Send error: %s", exc,
                extra={"event": "send_failed", "method": payload.get("method")},
            )
            return False
        return True

    # --- Connection management -------------------------------------------
    def _establish_connection(self) -> None:
        with self._lock:
            self._generation += 1
            generation = self._generation
            superseded, self._transport = self._transport, None
            if not self._closing:
                self._state = ConnectionState.CONNECTING
        if superseded is not None:
            # Its hooks carry the old generation and are ignored from here on.
            self._close_transport(superseded)

        hooks = TransportHooks(
            on_open=lambda: self._handle_open(generation),
            on_message=lambda raw: self._handle_message(generation, raw),
            on_error=lambda exc: self._handle_error(generation, exc),
            on_close=lambda: self._handle_close(generation),
        )
        transport: Optional[Transport] = None
        try:
            transport = self._transport_factory(self.url, hooks)
            with self._lock:
                self._transport = transport
            transport.open()
        except Exception:
            with self._lock:
                if transport is not None and self._transport is transport:
                    self._transport = None
                if self._state is ConnectionState.CONNECTING:
                    self._state = ConnectionState.DISCONNECTED
            raise

        with self._lock:
            closing = self._closing
        if closing:
            # close() ran while the handshake was in flight.
            transport.close()

    def _close_transport(self, transport: Transport) -> None:
        try:
            transport.close()
        except Exception as exc:
            self.logger.warning("Error while closing transport: %s", exc, extra={"event": "close_failed"})

    def _auto_connect(self) -> None:
        try:
            self.connect()
        except WebSocketError:
            if self.reconnect_enabled and not self._closing:
                self._start_workers()
                self._supervisor.request()

    def _start_workers(self) -> None:
        with self._lock:
            if self._closing:
                return
            if self._dispatcher is None or not self._dispatcher.is_alive():
                self._dispatcher = DispatchWorker(
                    self._queue,
                    self._registry.callbacks_for,
                    logger=self.logger.getChild("dispatch"),
                    serial=self._dispatch_lock,
                ).start()
            if self._heartbeat is None or not self._heartbeat.is_alive():
                self._heartbeat = HeartbeatWorker(
                    send_ping=self.send_ping,
                    is_connected=self.is_connected,
                    is_closing=self._is_closing,
                    interval=self.heartbeat_interval,
                    logger=self.logger.getChild("heartbeat"),
                ).start()

    def _is_closing(self) -> bool:
        return self._closing

    # --- Transport hooks --------------------------------------------------
    def _handle_open(self, generation: int) -> None:
        with self._control_lock:
            with self._lock:
                if generation != self._generation or self._closing:
                    return
                pending, self._pending = self._pending, []
                pending_ids = {identifier for identifier, _ in pending}
                replay = [
                    spec for spec in self._registry.all_active_specs()
                    if subscription_identifier(spec) not in pending_ids
                ]

            for _, spec in pending:
                self.send_subscribe(spec)
            for spec in replay:
                self.send_subscribe(spec)

            with self._lock:
                if generation != self._generation or self._closing:
                    return
                self._state = ConnectionState.CONNECTED

        self.logger.info(
            "Websocket connected to %s", self.url,
            extra={"event": "ws_open", "url": self.url, "flushed": len(pending), "replayed": len(replay)},
        )
        self._emit_metrics("ws_open", {"flushed": float(len(pending)), "replayed": float(len(replay))})
        self._fire("open")

    def _handle_message(self, generation: int, raw: Optional[Frame]) -> None:
        if generation != self._generation or not raw:
            return
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError:
                return
        if raw.startswith(CONNECTION_ESTABLISHED):
            return

        try:
            message = json.loads(raw)
        except ValueError as exc:
            self.logger.debug("Failed to parse message: %s", exc)
            return
        if not isinstance(message, dict):
            return

        channel = message.get("channel")
        if not channel or channel == "pong":
            return

        data = message.get("data")
        identifier = message_identifier(channel, data)
        if identifier is None:
            sub_type = exclusive_type(channel)
            identifier = self._registry.identifier_for_type(sub_type) if sub_type else None
        if identifier is None:
            return
        self._queue.enqueue(identifier, data)

    def _handle_error(self, generation: int, error: BaseException) -> None:
        if generation != self._generation:
            return
        self._fire("error", error)

    def _handle_close(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            was_connected = self._state is ConnectionState.CONNECTED
            self._transport = None
            if self._state is not ConnectionState.CLOSING:
                self._state = ConnectionState.DISCONNECTED
            closing = self._closing

        self.logger.info(
            "Websocket closed", extra={"event": "ws_close", "url": self.url, "expected": closing},
        )
        self._emit_metrics("ws_close", {"expected": 1.0 if closing else 0.0})
        self._fire("close")

        if was_connected and not closing and self.reconnect_enabled:
            self._supervisor.request()

    # --- Helpers ----------------------------------------------------------
    def _fire(self, event: str, *args: Any) -> None:
        callback = self._lifecycle.get(event)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            self.logger.error(
                "Lifecycle callback %s failed: %s", event, exc,
                exc_info=True, extra={"event": "lifecycle_callback_error", "lifecycle": event},
            )

    def _emit_metrics(self, name: str, values: Dict[str, float]) -> None:
        if not self.metrics_callback:
            return
        try:
            self.metrics_callback(name, values)
        except Exception as exc:  # pragma: no cover - external callback safety
            self.logger.debug("Metric callback failed for %s: %s", name, exc)


__all__ = ["StreamClient", "ConnectionState", "LIFECYCLE_EVENTS"]
