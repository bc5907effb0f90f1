"""Websocket transport and endpoint resolution for the streaming client."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Union

from websockets.exceptions import ConnectionClosedOK
from websockets.sync.client import ClientConnection, connect

from hlfeed.errors import WebSocketError

MAINNET_API_URL = "https://api.hyperliquid.xyz"
TESTNET_API_URL = "https://api.hyperliquid-testnet.xyz"
WS_ENDPOINT = "/ws"

Frame = Union[str, bytes]


@dataclass
class VenueEndpoint:
    """Connection details for a venue.

    Attributes:
        name: Human readable venue identifier.
        rest_url: Base REST endpoint for HTTP requests.
        websocket_url: WebSocket endpoint for streaming data.
    """

    name: str
    rest_url: str
    websocket_url: str


def websocket_url_for(base_url: str) -> str:
    """Turn an ``http(s)://`` API base into its ``wss://.../ws`` stream URL."""

    host = base_url.rstrip("/")
    for scheme in ("https://", "http://"):
        if host.startswith(scheme):
            host = host[len(scheme):]
            break
    return f"wss://{host}{WS_ENDPOINT}"


def resolve_endpoint(
    testnet: bool = False,
    base_url: Optional[str] = None,
    websocket_url: Optional[str] = None,
) -> VenueEndpoint:
    """Pick the endpoint for mainnet/testnet, honouring explicit overrides."""

    rest_url = (base_url or (TESTNET_API_URL if testnet else MAINNET_API_URL)).rstrip("/")
    return VenueEndpoint(
        name="hyperliquid-testnet" if testnet else "hyperliquid",
        rest_url=rest_url,
        websocket_url=websocket_url or websocket_url_for(rest_url),
    )


@dataclass
class TransportHooks:
    """Callbacks a transport invokes for connection-level events."""

    on_open: Callable[[], None]
    on_message: Callable[[Frame], None]
    on_error: Callable[[BaseException], None]
    on_close: Callable[[], None]


class Transport(Protocol):
    """Protocol describing the persistent connection used by the client."""

    def open(self) -> None:
        """Establish the connection; raise if it cannot be opened."""

    def send(self, text: str) -> None:
        """Write one text frame."""

    def close(self) -> None:
        """Close the connection; the close hook fires once the reader exits."""


TransportFactory = Callable[[str, TransportHooks], Transport]


class WebSocketTransport:
    """Synchronous websocket connection with a dedicated reader thread.

    :meth:`open` performs the handshake on the calling thread, so a failed
    connection raises there. The reader thread then fires ``on_open``, one
    ``on_message`` per frame, ``on_error`` if the connection fails, and always
    ``on_close`` when it ends.
    """

    def __init__(
        self,
        url: str,
        hooks: TransportHooks,
        open_timeout: float = 10.0,
        close_timeout: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.url = url
        self.hooks = hooks
        self.open_timeout = open_timeout
        self.close_timeout = close_timeout
        self.logger = logger or logging.getLogger(__name__)
        self._ws: Optional[ClientConnection] = None
        self._reader: Optional[threading.Thread] = None

    def open(self) -> None:
        self._ws = connect(
            self.url,
            open_timeout=self.open_timeout,
            close_timeout=self.close_timeout,
            max_size=None,
        )
        self._reader = threading.Thread(target=self._read_loop, args=(self._ws,), name="hlfeed-reader", daemon=True)
        self._reader.start()

    def send(self, text: str) -> None:
        ws = self._ws
        if ws is None:
            raise WebSocketError("Transport is not open")
        ws.send(text)

    def close(self) -> None:
        ws = self._ws
        if ws is None:
            return
        ws.close()

    def _read_loop(self, ws: ClientConnection) -> None:
        try:
            self.hooks.on_open()
            for raw in ws:
                self.hooks.on_message(raw)
        except ConnectionClosedOK:
            pass
        except Exception as exc:
            self.logger.warning("Websocket connection failed: %s", exc, extra={"event": "transport_error"})
            self.hooks.on_error(exc)
        finally:
            self._ws = None
            self.hooks.on_close()


def websocket_transport_factory(open_timeout: float = 10.0) -> TransportFactory:
    """Return a factory building :class:`WebSocketTransport` instances."""

    def factory(url: str, hooks: TransportHooks) -> Transport:
        return WebSocketTransport(url, hooks, open_timeout=open_timeout)

    return factory


__all__ = [
    "VenueEndpoint",
    "TransportHooks",
    "Transport",
    "TransportFactory",
    "WebSocketTransport",
    "websocket_transport_factory",
    "resolve_endpoint",
    "websocket_url_for",
    "MAINNET_API_URL",
    "TESTNET_API_URL",
]
