"""Job retry driver.

Every remote job is submitted under a deterministic id
``<prefix>-<attempt>``. A retried submission of the same id is a no-op on
the warehouse side, so re-executing a step never launches a job twice.
Attempts that finish FAILED are retried with a fresh id; an attempt whose
outcome cannot be classified stops the driver, because retrying could
apply the job's effect twice.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, List, Optional

from .common import DEFAULT_LOGGER, PrintLogger
from .errors import JobFailedError, JobInterruptedError, JobStatusUnknownError
from .events import EventType, emit_job_event
from .references import JobReference
from .services.base import Job, JobClient

MAX_RETRY_JOBS = 3
# None polls until the job completes.
JOB_POLL_MAX_RETRIES: Optional[int] = None


class JobStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


def parse_status(job: Optional[Job]) -> JobStatus:
    if job is None:
        return JobStatus.UNKNOWN
    if job.error_result is not None or job.errors:
        return JobStatus.FAILED
    return JobStatus.SUCCEEDED


def attempt_job_id(job_id_prefix: str, attempt: int) -> str:
    return f"{job_id_prefix}-{attempt}"


class JobRunner:
    """Drives one logical job to a terminal outcome across bounded attempts."""

    def __init__(
        self,
        job_client: JobClient,
        *,
        logger: PrintLogger = DEFAULT_LOGGER,
        emitter=None,
        cancel_event: Optional[threading.Event] = None,
        max_attempts: int = MAX_RETRY_JOBS,
        poll_max_retries: Optional[int] = JOB_POLL_MAX_RETRIES,
    ) -> None:
        self.job_client = job_client
        self.logger = logger
        self.emitter = emitter
        self.cancel_event = cancel_event or threading.Event()
        self.max_attempts = max_attempts
        self.poll_max_retries = poll_max_retries

    def cancel(self) -> None:
        self.cancel_event.set()

    def _poll(self, job_ref: JobReference, job_id_prefix: str, attempts: List[str]) -> Optional[Job]:
        if self.cancel_event.is_set():
            raise JobInterruptedError(
                f"Cancelled before polling job {job_ref.job_id}",
                job_id_prefix=job_id_prefix,
                attempts=attempts,
            )
        try:
            return self.job_client.poll_job(job_ref, self.poll_max_retries, interrupt=self.cancel_event)
        except JobInterruptedError as exc:
            raise JobInterruptedError(str(exc), job_id_prefix=job_id_prefix, attempts=attempts) from exc

    def run_job(
        self,
        job_id_prefix: str,
        project_id: str,
        submit: Callable[[JobReference], None],
        *,
        kind: str,
        on_success: Optional[Callable[[Job], None]] = None,
        max_attempts: Optional[int] = None,
    ) -> Job:
        """Submit and poll ``<prefix>-i`` until one attempt succeeds.

        Raises JobStatusUnknownError on the first unclassifiable outcome,
        JobFailedError once every attempt failed and JobInterruptedError when
        polling is cancelled. The remote job is not cancelled in that case.
        """
        limit = max_attempts or self.max_attempts
        attempts: List[str] = []
        last_failed: Optional[Job] = None
        for attempt in range(limit):
            job_ref = JobReference(project_id=project_id, job_id=attempt_job_id(job_id_prefix, attempt))
            attempts.append(job_ref.job_id)
            submit(job_ref)
            emit_job_event(
                self.emitter, EventType.JOB_SUBMITTED, kind=kind, job_id=job_ref.job_id,
                project=project_id, attempt=attempt, logger=self.logger,
            )
            try:
                job = self._poll(job_ref, job_id_prefix, attempts)
            except JobInterruptedError:
                emit_job_event(
                    self.emitter, EventType.JOB_INTERRUPTED, kind=kind, job_id=job_ref.job_id,
                    project=project_id, level="WARN", logger=self.logger,
                )
                self.logger.warn("job_poll_interrupted", job_id=job_ref.job_id, kind=kind)
                raise
            status = parse_status(job)
            if status == JobStatus.SUCCEEDED:
                emit_job_event(
                    self.emitter, EventType.JOB_SUCCEEDED, kind=kind, job_id=job_ref.job_id,
                    project=project_id, attempt=attempt, logger=self.logger,
                )
                if on_success is not None:
                    on_success(job)
                return job
            if status == JobStatus.UNKNOWN:
                emit_job_event(
                    self.emitter, EventType.JOB_UNKNOWN, kind=kind, job_id=job_ref.job_id,
                    project=project_id, level="ERROR", logger=self.logger,
                )
                raise JobStatusUnknownError(
                    f"UNKNOWN status of {kind} job [{job_ref.job_id}]: "
                    f"{job.to_pretty_string() if job is not None else 'null'}.",
                    job_id_prefix=job_id_prefix,
                    attempts=attempts,
                )
            last_failed = job
            emit_job_event(
                self.emitter, EventType.JOB_FAILED, kind=kind, job_id=job_ref.job_id,
                project=project_id, attempt=attempt, level="WARN",
                error=job.error_result if job is not None else None, logger=self.logger,
            )
        diagnostic = last_failed.to_pretty_string() if last_failed is not None else "null"
        raise JobFailedError(
            f"Failed to create {kind} job with id prefix {job_id_prefix}, "
            f"reached max retries: {limit}, last failed {kind} job: {diagnostic}.",
            job_id_prefix=job_id_prefix,
            attempts=attempts,
            last_job=diagnostic,
        )
