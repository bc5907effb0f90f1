"""Streaming client for Hyperliquid websocket channels."""

from .channels import message_identifier, subscription_identifier, supported_types
from .client import ConnectionState, StreamClient
from .dispatch import BoundedDispatchQueue, DispatchWorker, QueueClosed
from .heartbeat import HeartbeatWorker
from .reconnect import BackoffConfig, ReconnectionSupervisor
from .registry import SubscriptionRegistry
from .transport import TransportHooks, VenueEndpoint, WebSocketTransport, resolve_endpoint

__all__ = [
    "StreamClient",
    "ConnectionState",
    "SubscriptionRegistry",
    "BoundedDispatchQueue",
    "DispatchWorker",
    "QueueClosed",
    "HeartbeatWorker",
    "BackoffConfig",
    "ReconnectionSupervisor",
    "TransportHooks",
    "VenueEndpoint",
    "WebSocketTransport",
    "resolve_endpoint",
    "subscription_identifier",
    "message_identifier",
    "supported_types",
]
