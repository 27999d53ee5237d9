"""Exceptions raised by the job lifecycle components."""
from __future__ import annotations


class JobError(Exception):
    """Base class for job lifecycle errors."""


class InvalidArgument(JobError, ValueError):
    """The caller supplied an unusable value (empty or oversized prompt)."""


class NotFound(JobError, KeyError):
    """The requested job does not exist or was deleted."""

    def __init__(self, job_id: str) -> None:
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job not found: {self.job_id}"


class StoreUnavailable(JobError):
    """The job store could not be read or written."""


class InvalidTransition(JobError):
    """A terminal job was asked to change state again."""

    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id} is already {current}; cannot become {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class GenerationFailed(JobError):
    """The image backend returned an error or unusable output."""

    retryable = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class GenerationTimeout(GenerationFailed):
    """The image backend did not answer within its deadline."""

    retryable = True


class GenerationRejected(GenerationFailed):
    """The image backend refused the prompt (content policy)."""

    retryable = False


__all__ = [
    "GenerationFailed",
    "GenerationRejected",
    "GenerationTimeout",
    "InvalidArgument",
    "InvalidTransition",
    "JobError",
    "NotFound",
    "StoreUnavailable",
]
