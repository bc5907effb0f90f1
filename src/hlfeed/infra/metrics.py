"""In-process metrics for the stream runner, rendered as Prometheus text."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

Labels = Tuple[Tuple[str, str], ...]
SeriesKey = Tuple[str, Labels]


def _series_name(name: str, labels: Labels) -> str:
    if not labels:
        return name
    rendered = ",".join(f'{key}="{value}"' for key, value in labels)
    return f"{name}{{{rendered}}}"


@dataclass
class MetricsSink:
    """Counters and gauges keyed by name plus optional labels.

    :meth:`observe` matches the ``metrics_callback(name, values)`` hook of
    :class:`~hlfeed.data.client.StreamClient`: every client event bumps
    ``<name>_total`` and each numeric value lands in a ``<name>_<key>`` gauge.
    With ``emit_textfile`` set the rendered text is rewritten on every update,
    for node-exporter style scraping.
    """

    namespace: str = "hlfeed"
    metrics_file: Path = Path("var/metrics.prom")
    emit_textfile: bool = False
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("hlfeed.metrics"))
    _counters: Dict[SeriesKey, int] = field(default_factory=dict, init=False, repr=False)
    _gauges: Dict[SeriesKey, float] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.metrics_file = Path(self.metrics_file)

    def incr(self, name: str, value: int = 1, **labels: Any) -> None:
        key = (name, self._labels(labels))
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value
            self._flush_locked()

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        with self._lock:
            self._gauges[(name, self._labels(labels))] = float(value)
            self._flush_locked()

    def observe(self, name: str, values: Mapping[str, Any]) -> None:
        numeric = {key: float(value) for key, value in values.items() if isinstance(value, (int, float))}
        with self._lock:
            total = (f"{name}_total", ())
            self._counters[total] = self._counters.get(total, 0) + 1
            for key, value in numeric.items():
                self._gauges[(f"{name}_{key}", ())] = value
            self._flush_locked()
        self.logger.debug(name, extra={"event": name, **numeric})

    def export(self) -> Dict[str, float]:
        """Flat ``series -> value`` view; labelled series use the Prometheus form."""

        with self._lock:
            series = list(self._counters.items()) + list(self._gauges.items())
        return {_series_name(name, labels): value for (name, labels), value in series}

    def render(self) -> str:
        with self._lock:
            return self._render_locked()

    @staticmethod
    def _labels(labels: Mapping[str, Any]) -> Labels:
        return tuple(sorted((key, str(value)) for key, value in labels.items()))

    def _render_locked(self) -> str:
        lines = [
            f"{self.namespace}_{_series_name(name, labels)} {int(value)}"
            for (name, labels), value in sorted(self._counters.items())
        ]
        lines.extend(
            f"{self.namespace}_{_series_name(name, labels)} {value}"
            for (name, labels), value in sorted(self._gauges.items())
        )
        return "\n".join(lines) + "\n"

    def _flush_locked(self) -> None:
        if not self.emit_textfile:
            return
        staging = self.metrics_file.with_name(self.metrics_file.name + ".tmp")
        try:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            staging.write_text(self._render_locked(), encoding="utf-8")
            os.replace(staging, self.metrics_file)
        except OSError as exc:
            self.logger.warning("Failed to write metrics textfile %s: %s", self.metrics_file, exc)


__all__ = ["MetricsSink"]
