from __future__ import annotations

import threading
from collections import defaultdict
from typing import Dict, Iterable, Optional, Tuple

from salam_bq.common import PrintLogger, RUN_ID

from .types import Event, EventCategory, EventType, Subscriber


class StructuredLogSubscriber(Subscriber):
    """Writes every event to the PrintLogger as one structured line."""

    def __init__(self, logger: PrintLogger, job_name: str, *, emit_structured: bool = True) -> None:
        self.logger = logger
        self.job_name = job_name
        self.emit_structured = emit_structured

    def interests(self) -> Iterable[EventCategory]:
        return []

    def on_event(self, event: Event) -> None:
        record = {
            "ts": event.timestamp.astimezone().isoformat(timespec="milliseconds"),
            "event": event.type.value,
            "category": event.category.value,
            "job": self.job_name,
            "run_id": RUN_ID,
            "seq": event.seq,
            "level": "INFO",
            **event.payload,
        }
        level = record.pop("level") or "INFO"
        if event.type == EventType.LOG:
            msg = record.pop("msg", event.type.value)
            self.logger.log(level, msg, **{k: v for k, v in record.items() if k not in {"job", "run_id"}})
        elif self.emit_structured:
            self.logger.event(event.type.value, level=level, **{k: v for k, v in record.items() if k != "event"})
        else:
            self.logger.info(event.type.value, **record)


# Payload key summed into a counter for each event type.
_COUNTED: Dict[EventType, Tuple[str, str]] = {
    EventType.STREAM_FLUSH: ("stream.bytes", "bytes"),
    EventType.LOAD_STAGED: ("load.staged_bytes", "bytes"),
    EventType.LOAD_COMMITTED: ("load.partitions", "partitions"),
    EventType.EXTRACT_SPLIT: ("extract.files", "files"),
}


class CounterSubscriber(Subscriber):
    """Thread-safe run counters: job outcomes plus byte and file volumes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = defaultdict(int)

    def interests(self) -> Iterable[EventCategory]:
        return (EventCategory.JOB, EventCategory.LOAD, EventCategory.EXTRACT, EventCategory.STREAM)

    def on_event(self, event: Event) -> None:
        with self._lock:
            if event.category == EventCategory.JOB:
                self._counts[event.type.value] += 1
                return
            counted = _COUNTED.get(event.type)
            if counted is not None:
                name, key = counted
                self._counts[name] += int(event.payload.get(key) or 0)

    def get(self, name: str, default: Optional[int] = 0) -> Optional[int]:
        with self._lock:
            return self._counts.get(name, default)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)
