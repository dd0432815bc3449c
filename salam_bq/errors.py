from __future__ import annotations

from typing import List, Optional, Sequence


class BigQueryIOError(Exception):
    """Base class for every failure raised by salam_bq."""


class ConfigurationError(BigQueryIOError, ValueError):
    """Invalid or contradictory transfer configuration."""


class ValidationError(BigQueryIOError):
    """A pre-flight check against the warehouse failed."""


class ResourceNotFoundError(BigQueryIOError):
    """A dataset or table the transfer depends on does not exist."""


class ExtractResultError(BigQueryIOError):
    """An extract job finished without a usable destination file count."""


class InsertError(BigQueryIOError):
    """Streaming inserts kept failing after the retry budget."""

    def __init__(self, message: str, errors: Optional[List[dict]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class JobError(BigQueryIOError):
    """Base for failures of the job retry driver."""

    def __init__(
        self,
        message: str,
        *,
        job_id_prefix: str,
        attempts: Sequence[str] = (),
        last_job: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.job_id_prefix = job_id_prefix
        self.attempts = tuple(attempts)
        self.last_job = last_job


class JobFailedError(JobError):
    """Every attempt of a job ended in FAILED."""


class JobStatusUnknownError(JobError):
    """A job could not be classified; retrying could duplicate its effect."""


class JobInterruptedError(JobError):
    """Polling was cancelled while a job was still running."""
