"""Config loading utilities for the stream runner and dashboard."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from hlfeed.data.reconnect import BackoffConfig

DEFAULT_CONFIG_PATH = "config/settings.yaml"


@dataclass
class StreamConfig:
    testnet: bool = False
    base_url: Optional[str] = None
    websocket_url: Optional[str] = None
    max_queue_size: int = 1024
    heartbeat_interval: float = 50.0
    reconnect: bool = True
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    join_timeout: float = 5.0
    open_timeout: float = 10.0


@dataclass
class DashboardConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    enable: bool = True


@dataclass
class RecorderConfig:
    enable: bool = False
    path: str = "var/stream"


@dataclass
class MetricsConfig:
    emit_textfile: bool = False
    metrics_file: str = "var/metrics.prom"


@dataclass
class AppConfig:
    stream: StreamConfig = field(default_factory=StreamConfig)
    subscriptions: List[Dict[str, Any]] = field(default_factory=list)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    recorder: RecorderConfig = field(default_factory=RecorderConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)


def _backoff_from_config(config: Dict[str, Any]) -> BackoffConfig:
    return BackoffConfig(
        initial=float(config.get("initial", BackoffConfig.initial)),
        maximum=float(config.get("maximum", BackoffConfig.maximum)),
        factor=float(config.get("factor", BackoffConfig.factor)),
        jitter=float(config.get("jitter", BackoffConfig.jitter)),
    )


def parse_config(raw: Dict[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from an already-parsed mapping."""

    stream = raw.get("stream") or {}
    dashboard = raw.get("dashboard") or {}
    recorder = raw.get("recorder") or {}
    metrics = raw.get("metrics") or {}

    return AppConfig(
        stream=StreamConfig(
            testnet=bool(stream.get("testnet", False)),
            base_url=stream.get("base_url"),
            websocket_url=stream.get("websocket_url"),
            max_queue_size=int(stream.get("max_queue_size", 1024)),
            heartbeat_interval=float(stream.get("heartbeat_interval", 50.0)),
            reconnect=bool(stream.get("reconnect", True)),
            backoff=_backoff_from_config(stream.get("backoff") or {}),
            join_timeout=float(stream.get("join_timeout", 5.0)),
            open_timeout=float(stream.get("open_timeout", 10.0)),
        ),
        subscriptions=[dict(sub) for sub in raw.get("subscriptions") or []],
        dashboard=DashboardConfig(
            host=dashboard.get("host", "0.0.0.0"),
            port=int(dashboard.get("port", 8000)),
            enable=bool(dashboard.get("enable", True)),
        ),
        recorder=RecorderConfig(
            enable=bool(recorder.get("enable", False)),
            path=recorder.get("path", "var/stream"),
        ),
        metrics=MetricsConfig(
            emit_textfile=bool(metrics.get("emit_textfile", False)),
            metrics_file=metrics.get("metrics_file", "var/metrics.prom"),
        ),
    )


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML, defaulting when the file is missing."""

    resolved = Path(path or env_or_default("CONFIG_PATH", DEFAULT_CONFIG_PATH)).expanduser().resolve()
    if not resolved.exists():
        logging.getLogger(__name__).warning("Config file %s not found, using defaults", resolved)
        return AppConfig()
    with resolved.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return parse_config(raw)


def env_or_default(key: str, default: str) -> str:
    return os.getenv(key, default)


__all__ = [
    "load_config",
    "parse_config",
    "AppConfig",
    "StreamConfig",
    "DashboardConfig",
    "RecorderConfig",
    "MetricsConfig",
]
