"""Stream runner wiring configured subscriptions to the recorder and dashboard."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Callable, List, Optional

import uvicorn

from hlfeed.dashboard.app import DashboardState, create_dashboard_app
from hlfeed.data.channels import subscription_identifier
from hlfeed.data.client import StreamClient
from hlfeed.infra.config import AppConfig, load_config
from hlfeed.infra.logging import configure_logging
from hlfeed.infra.metrics import MetricsSink
from hlfeed.infra.storage import JsonLinesRecorder


class StreamRunner:
    """Owns the client and the consumers attached to each configured channel."""

    def __init__(self, cfg: AppConfig, client: Optional[StreamClient] = None) -> None:
        self.cfg = cfg
        self.logger = logging.getLogger("hlfeed.app")
        self.metrics = MetricsSink(
            emit_textfile=cfg.metrics.emit_textfile,
            metrics_file=cfg.metrics.metrics_file,
        )
        self.state = DashboardState()
        self.recorder = JsonLinesRecorder(cfg.recorder.path) if cfg.recorder.enable else None
        self.client = client or StreamClient.from_config(
            cfg.stream,
            metrics_callback=self.metrics.observe,
            logger=self.logger.getChild("client"),
        )
        self.handles: List[int] = []

        self.client.on("open", lambda: self.metrics.set_gauge("connected", 1))
        self.client.on("close", lambda: self.metrics.set_gauge("connected", 0))
        self.client.on("error", lambda exc: self.logger.warning("Stream error: %s", exc, extra={"event": "stream_error"}))

    def _consumer(self, identifier: str) -> Callable[[Any], None]:
        def consume(data: Any) -> None:
            self.state.record_message(identifier)
            self.metrics.incr("messages", channel=identifier.split(":", 1)[0])
            if self.recorder:
                self.recorder.record(identifier, data)

        return consume

    def start(self) -> None:
        """Subscribe the configured channels.

        The first subscription opens the connection. A failed first attempt is
        reported through the client's ``error`` callback and retried by its
        reconnection supervisor, so a network blip at startup is not fatal.
        """

        if not self.cfg.subscriptions:
            self.logger.warning("No subscriptions configured; the stream will stay idle.")
        for subscription in self.cfg.subscriptions:
            identifier = subscription_identifier(subscription)
            self.handles.append(self.client.subscribe(subscription, self._consumer(identifier)))

    def stop(self) -> None:
        for handle in self.handles:
            self.client.unsubscribe(handle)
        self.handles.clear()
        self.client.close()
        self.metrics.set_gauge("dropped_messages", self.client.dropped_message_count())


async def run_stream(config_path: Optional[str] = None) -> None:
    configure_logging()
    cfg = load_config(config_path)
    logger = logging.getLogger(__name__)

    runner = StreamRunner(cfg)
    await asyncio.to_thread(runner.start)

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows/limited environments
            pass

    async def serve_dashboard() -> None:
        if not cfg.dashboard.enable:
            return
        app = create_dashboard_app(runner.client, runner.state, runner.metrics)
        config = uvicorn.Config(app, host=cfg.dashboard.host, port=cfg.dashboard.port, log_level="info")
        server = uvicorn.Server(config)
        await server.serve()

    async def report_drops() -> None:
        while True:
            await asyncio.sleep(10)
            runner.metrics.set_gauge("dropped_messages", runner.client.dropped_message_count())

    tasks = [asyncio.create_task(serve_dashboard()), asyncio.create_task(report_drops())]
    await stop_event.wait()
    logger.info("Shutting down stream runner")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await asyncio.to_thread(runner.stop)


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Hyperliquid websocket stream runner")
    parser.add_argument("--config", default=None, help="YAML config path (defaults to $CONFIG_PATH)")
    args = parser.parse_args()
    asyncio.run(run_stream(args.config))


if __name__ == "__main__":
    main()
