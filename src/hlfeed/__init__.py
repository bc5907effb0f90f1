"""Managed real-time subscription client for the Hyperliquid websocket feed."""

from .data import BackoffConfig, ConnectionState, StreamClient
from .errors import HyperliquidError, InvalidChannelError, WebSocketError

__version__ = "0.1.0"

__all__ = [
    "StreamClient",
    "ConnectionState",
    "BackoffConfig",
    "HyperliquidError",
    "WebSocketError",
    "InvalidChannelError",
]
