from __future__ import annotations

from typing import Any, Optional

from .types import Event, EventCategory, EventType


def emit_log(
    emitter,
    *,
    level: str,
    msg: str,
    logger=None,
    **payload: Any,
) -> None:
    record = {"level": level.upper(), "msg": msg, **payload}
    if emitter is not None:
        emitter.emit(Event(category=EventCategory.LOG, type=EventType.LOG, payload=record))
    elif logger is not None:
        logger.log(level.upper(), msg, **payload)


def emit_job_event(
    emitter,
    event_type: EventType,
    *,
    kind: str,
    job_id: str,
    project: Optional[str],
    logger=None,
    level: str = "INFO",
    **payload: Any,
) -> None:
    """Publish a job lifecycle event, falling back to the logger without a bus."""
    record = {"level": level, "kind": kind, "job_id": job_id, "project": project, **payload}
    if emitter is not None:
        emitter.emit(Event(category=EventCategory.JOB, type=event_type, payload=record))
    elif logger is not None:
        logger.log(level, event_type.value, kind=kind, job_id=job_id, project=project, **payload)
