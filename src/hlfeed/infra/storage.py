"""Append-only JSONL recorder for channel updates."""

from __future__ import annotations

import json
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class JsonLinesRecorder:
    """Writes one JSON line per update to ``<base_dir>/<identifier>.jsonl``.

    Identifiers such as ``candle:eth:1m`` are made filesystem safe by replacing
    separators with underscores.
    """

    def __init__(self, base_dir: str | Path = "var/stream", clock: Optional[Callable[[], datetime]] = None) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self.counts: Dict[str, int] = {}

    def path_for(self, identifier: str) -> Path:
        return self.base_dir / f"{_UNSAFE.sub('_', identifier)}.jsonl"

    def record(self, identifier: str, data: Any) -> None:
        line = json.dumps(
            {"identifier": identifier, "received_at": self._clock().isoformat(), "data": data},
            default=str,
        )
        path = self.path_for(identifier)
        with self._lock:
            with path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
            self.counts[identifier] = self.counts.get(identifier, 0) + 1


__all__ = ["JsonLinesRecorder"]
