"""FastAPI dashboard exposing stream health and per-channel activity."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from hlfeed.data.client import StreamClient
from hlfeed.infra.metrics import MetricsSink


class DashboardState:
    """Counts messages per identifier as they are dispatched."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.message_counts: Dict[str, int] = {}
        self.last_update: Dict[str, str] = {}

    def record_message(self, identifier: str) -> None:
        with self._lock:
            self.message_counts[identifier] = self.message_counts.get(identifier, 0) + 1
            self.last_update[identifier] = datetime.now(timezone.utc).isoformat()

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                identifier: {"messages": count, "last_update": self.last_update.get(identifier)}
                for identifier, count in self.message_counts.items()
            }


def create_dashboard_app(
    client: StreamClient,
    state: DashboardState,
    metrics: Optional[MetricsSink] = None,
) -> FastAPI:
    app = FastAPI(title="hlfeed Stream Dashboard", version="0.1.0")

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok" if client.is_connected() else "degraded",
            "state": client.state.value,
            "url": client.url,
            "dropped_messages": client.dropped_message_count(),
        }

    @app.get("/subscriptions")
    async def subscriptions() -> dict:
        activity = state.snapshot()
        return {
            identifier: {"subscribers": subscribers, **activity.get(identifier, {"messages": 0, "last_update": None})}
            for identifier, subscribers in client.subscriptions().items()
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_text() -> str:
        if metrics is None:
            return ""
        return metrics.render()

    return app


__all__ = ["create_dashboard_app", "DashboardState"]
