"""Data models describing asynchronous image generation jobs."""
from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidTransition

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    """Return a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT) if value else None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


class JobStatus(str, Enum):
    """Lifecycle states for a generation job."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PENDING


class CreationClock:
    """Hands out strictly increasing creation timestamps.

    Two jobs submitted within the same clock tick still get distinct
    ``created_at`` values, so listing order always matches submission order.
    """

    def __init__(self) -> None:
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = utcnow()
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current


@dataclass
class Job:
    """A single prompt-to-image request and its outcome."""

    id: str
    prompt: str
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = None  # type: ignore[assignment]
    image_url: Optional[str] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    attempts: int = 0
    trace_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = utcnow()
        if not isinstance(self.status, JobStatus):
            self.status = JobStatus(self.status)

    def mark_completed(self, image_url: str) -> None:
        self._ensure_pending(JobStatus.COMPLETED)
        self.status = JobStatus.COMPLETED
        self.image_url = image_url
        self.error_message = None
        self.completed_at = utcnow()

    def mark_failed(self, message: str) -> None:
        self._ensure_pending(JobStatus.FAILED)
        self.status = JobStatus.FAILED
        self.error_message = message or "Generation failed"
        self.image_url = None
        self.failed_at = utcnow()

    def _ensure_pending(self, target: JobStatus) -> None:
        if self.status.is_terminal:
            raise InvalidTransition(self.id, self.status.value, target.value)

    def copy(self) -> "Job":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the public wire field names."""

        return {
            "id": self.id,
            "prompt": self.prompt,
            "status": self.status.value,
            "imageUrl": self.image_url,
            "errorMessage": self.error_message,
            "createdAt": format_timestamp(self.created_at),
            "completedAt": format_timestamp(self.completed_at),
            "failedAt": format_timestamp(self.failed_at),
        }

    def to_record(self) -> Dict[str, Any]:
        """Serialize every field, including internal ones, for storage."""

        return {
            "id": self.id,
            "prompt": self.prompt,
            "status": self.status.value,
            "image_url": self.image_url,
            "error_message": self.error_message,
            "created_at": format_timestamp(self.created_at),
            "completed_at": format_timestamp(self.completed_at),
            "failed_at": format_timestamp(self.failed_at),
            "attempts": self.attempts,
            "trace_id": self.trace_id,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Job":
        return cls(
            id=str(record["id"]),
            prompt=str(record["prompt"]),
            status=JobStatus(record["status"]),
            created_at=parse_timestamp(record.get("created_at")),  # type: ignore[arg-type]
            image_url=record.get("image_url"),
            error_message=record.get("error_message"),
            completed_at=parse_timestamp(record.get("completed_at")),
            failed_at=parse_timestamp(record.get("failed_at")),
            attempts=int(record.get("attempts") or 0),
            trace_id=record.get("trace_id"),
        )


__all__ = [
    "CreationClock",
    "ISO_FORMAT",
    "Job",
    "JobStatus",
    "format_timestamp",
    "parse_timestamp",
    "utcnow",
]
