"""Infrastructure utilities for logging, configuration, metrics, and recording."""

from .config import AppConfig, StreamConfig, load_config
from .logging import configure_logging
from .metrics import MetricsSink
from .storage import JsonLinesRecorder

__all__ = [
    "configure_logging",
    "load_config",
    "AppConfig",
    "StreamConfig",
    "MetricsSink",
    "JsonLinesRecorder",
]
