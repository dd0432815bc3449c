from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable

from salam_bq.common import next_event_seq


class EventCategory(str, Enum):
    JOB = "job"
    LOAD = "load"
    EXTRACT = "extract"
    STREAM = "stream"
    CLEANUP = "cleanup"
    TRANSFER = "transfer"
    LOG = "log"


class EventType(str, Enum):
    JOB_SUBMITTED = "job.submitted"
    JOB_SUCCEEDED = "job.succeeded"
    JOB_FAILED = "job.failed"
    JOB_UNKNOWN = "job.unknown"
    JOB_INTERRUPTED = "job.interrupted"
    LOAD_STAGED = "load.staged"
    LOAD_PARTITIONED = "load.partitioned"
    LOAD_COMMITTED = "load.committed"
    EXTRACT_SPLIT = "extract.split"
    STREAM_FLUSH = "stream.flush"
    CLEANUP_FAILED = "cleanup.failed"
    TRANSFER_START = "transfer.start"
    TRANSFER_SUCCESS = "transfer.success"
    TRANSFER_FAILURE = "transfer.failure"
    LOG = "log"


@dataclass
class Event:
    category: EventCategory
    type: EventType
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    seq: int = field(default_factory=next_event_seq)


class Subscriber:
    """Base subscriber; override interests and on_event."""

    def interests(self) -> Iterable[EventCategory]:
        return []

    def on_event(self, event: Event) -> None:
        raise NotImplementedError
