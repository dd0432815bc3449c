from .bus import Emitter
from .helpers import emit_job_event, emit_log
from .types import Event, EventCategory, EventType, Subscriber
from .subscribers import CounterSubscriber, StructuredLogSubscriber

__all__ = [
    "CounterSubscriber",
    "Emitter",
    "Event",
    "EventCategory",
    "EventType",
    "Subscriber",
    "StructuredLogSubscriber",
    "emit_job_event",
    "emit_log",
]
