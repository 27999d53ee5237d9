"""Job management primitives for asynchronous image generation."""

from .errors import (  # noqa: F401
    GenerationFailed,
    GenerationRejected,
    GenerationTimeout,
    InvalidArgument,
    InvalidTransition,
    JobError,
    NotFound,
    StoreUnavailable,
)
from .models import Job, JobStatus  # noqa: F401
from .store import JobStore, MemoryJobStore, SQLiteJobStore, build_store  # noqa: F401
from .listing import JobListing  # noqa: F401
from .manager import JobManager, RetryPolicy  # noqa: F401

__all__ = [
    "GenerationFailed",
    "GenerationRejected",
    "GenerationTimeout",
    "InvalidArgument",
    "InvalidTransition",
    "Job",
    "JobError",
    "JobListing",
    "JobManager",
    "JobStatus",
    "JobStore",
    "MemoryJobStore",
    "NotFound",
    "RetryPolicy",
    "SQLiteJobStore",
    "StoreUnavailable",
    "build_store",
]
