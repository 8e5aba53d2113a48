from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

_CLOSE = None


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlAuditLogger:
    """Appends mux audit events to a JSONL file from a background thread.

    Instances are callable, so one can be passed directly as a router's
    ``audit_hook``. When the queue is full the event is dropped and counted;
    the count is written as a final record on close.
    """

    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_queue_size: int = 8192,
        events: set[str] | None = None,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self.events = events
        self._lock = Lock()
        self._dropped_records = 0
        self._queue: Queue[str | None] = Queue(maxsize=max(1, max_queue_size))
        self._worker: Thread | None = None
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._worker = Thread(
                target=self._drain_queue, name="mux-audit-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def __call__(self, event: dict[str, Any]) -> None:
        self.log(event)

    def log(self, event: dict[str, Any]) -> None:
        if not self.enabled or self._worker is None:
            return
        if self.events is not None and event.get("event") not in self.events:
            return
        try:
            self._queue.put_nowait(_encode({"ts": round(time.time(), 3), **event}))
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self, timeout_seconds: float = 2.0) -> None:
        worker = self._worker
        if worker is None:
            return
        self._queue.put(_CLOSE)
        worker.join(timeout=timeout_seconds)
        self._worker = None

    def _drain_queue(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while (line := self._queue.get()) is not _CLOSE:
                handle.write(line + "\n")
                handle.flush()
            with self._lock:
                dropped, self._dropped_records = self._dropped_records, 0
            if dropped:
                handle.write(
                    _encode(
                        {
                            "ts": round(time.time(), 3),
                            "event": "mux_audit_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()


__all__ = ["JsonlAuditLogger"]
