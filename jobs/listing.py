"""Read-only, ordered views over the job store."""
from __future__ import annotations

from typing import Dict, List, Optional, Union

from .errors import InvalidArgument
from .models import Job, JobStatus
from .store import JobStore


def _sort_key(job: Job) -> tuple:
    return (job.created_at, job.id)


class JobListing:
    """Snapshot listings, newest first by creation time.

    Completion order never affects the result. Observers see updates only by
    calling ``list`` again; there is no push channel.
    """

    def __init__(self, store: JobStore) -> None:
        self._store = store

    def list(
        self,
        *,
        status: Union[JobStatus, str, None] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        wanted = _coerce_status(status)
        if limit is not None and limit < 0:
            raise InvalidArgument("limit must not be negative")

        jobs = sorted(self._store.list(), key=_sort_key, reverse=True)
        if wanted is not None:
            jobs = [job for job in jobs if job.status is wanted]
        if limit is not None:
            jobs = jobs[:limit]
        return jobs

    def counts(self) -> Dict[str, int]:
        totals = {status.value: 0 for status in JobStatus}
        for job in self._store.list():
            totals[job.status.value] += 1
        totals["total"] = sum(totals.values())
        return totals


def _coerce_status(status: Union[JobStatus, str, None]) -> Optional[JobStatus]:
    if status is None or isinstance(status, JobStatus):
        return status
    normalized = str(status).strip().lower()
    if not normalized:
        return None
    try:
        return JobStatus(normalized)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in JobStatus)
        raise InvalidArgument(f"Unknown status {status!r}; expected one of: {allowed}") from exc


__all__ = ["JobListing"]
