"""Exception types raised by the streaming client."""


class HyperliquidError(Exception):
    """Base class for all errors raised by hlfeed."""


class WebSocketError(HyperliquidError):
    """Raised when the websocket feed cannot be used as requested."""


class InvalidChannelError(WebSocketError, ValueError):
    """Raised when a subscription names a channel type without an identifier rule."""

    def __init__(self, message: str, subscription: object = None) -> None:
        super().__init__(message)
        self.subscription = subscription


__all__ = ["HyperliquidError", "WebSocketError", "InvalidChannelError"]
