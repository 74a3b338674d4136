from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Protocol

from prompttrain_gateway.models import UsageEvent


class UsageLedger(Protocol):
    def record(self, event: UsageEvent) -> None: ...

    def close(self) -> None: ...


class InMemoryUsageLedger:
    def __init__(self) -> None:
        self.events: list[UsageEvent] = []

    def record(self, event: UsageEvent) -> None:
        self.events.append(event)

    def close(self) -> None:
        return None


class JsonlUsageLedger:
    """Appends usage events as JSON lines from a background writer thread.

    ``record`` never blocks: when the queue is full the event is dropped and
    counted, and the count is written as a marker record on close.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="usage-ledger-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def record(self, event: UsageEvent) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return
        line = json.dumps(
            {"event": "usage", **event.to_dict()},
            ensure_ascii=True,
            separators=(",", ":"),
            default=str,
        )
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if not self.enabled or queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                handle.flush()
                queue.task_done()
            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped > 0:
                handle.write(
                    json.dumps(
                        {
                            "ts": int(time.time()),
                            "event": "usage_ledger_dropped_records",
                            "dropped_count": dropped,
                        },
                        ensure_ascii=True,
                        separators=(",", ":"),
                    )
                    + "\n"
                )
                handle.flush()
