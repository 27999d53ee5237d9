"""Job storage backends: in-memory and SQLite."""
from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Set

from .errors import StoreUnavailable
from .models import Job, format_timestamp, parse_timestamp, utcnow

LOGGER = logging.getLogger("imagejobs.jobs.store")

JobMutator = Callable[[Job], None]


class DuplicateJobId(ValueError):
    """Raised when a job id is inserted twice (ids are never reused)."""


class JobStore(ABC):
    """Source of truth for job records keyed by id.

    Every method returns detached copies; the only way to change a stored job
    is ``update``, which runs its mutator inside the store's critical section
    so concurrent writers never interleave on the same job.
    """

    @abstractmethod
    def create(self, job: Job) -> Job:
        """Insert a new job. Raises ``DuplicateJobId`` for a known or retired id."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        """Return the job, or ``None`` if it does not exist."""

    @abstractmethod
    def list(self) -> List[Job]:
        """Return every live job in unspecified order."""

    @abstractmethod
    def update(self, job_id: str, mutator: JobMutator) -> Optional[Job]:
        """Apply ``mutator`` atomically; ``None`` if the job does not exist.

        Exceptions raised by the mutator propagate and leave the stored job
        unchanged.
        """

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        """Remove the job; ``False`` if it did not exist."""

    @abstractmethod
    def __len__(self) -> int:
        ...

    def close(self) -> None:
        return None


class MemoryJobStore(JobStore):
    """Thread-safe in-memory storage for jobs."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._retired: Set[str] = set()
        self._lock = threading.RLock()

    def create(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs or job.id in self._retired:
                raise DuplicateJobId(job.id)
            self._jobs[job.id] = job.copy()
            return job.copy()

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.copy() if job else None

    def list(self) -> List[Job]:
        with self._lock:
            return [job.copy() for job in self._jobs.values()]

    def update(self, job_id: str, mutator: JobMutator) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None
            working = job.copy()
            mutator(working)
            self._jobs[job_id] = working
            return working.copy()

    def delete(self, job_id: str) -> bool:
        with self._lock:
            removed = self._jobs.pop(job_id, None)
            if removed is None:
                return False
            self._retired.add(job_id)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    prompt TEXT NOT NULL,
    status TEXT NOT NULL,
    image_url TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    failed_at TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    trace_id TEXT,
    deleted_at TEXT
)
"""

_INDEX = """
CREATE INDEX IF NOT EXISTS idx_jobs_created_at
ON jobs(created_at DESC)
"""

_COLUMNS = (
    "id",
    "prompt",
    "status",
    "image_url",
    "error_message",
    "created_at",
    "completed_at",
    "failed_at",
    "attempts",
    "trace_id",
)


class SQLiteJobStore(JobStore):
    """Durable job storage backed by a single SQLite file.

    Writes are serialized by a process-wide lock and committed before the
    call returns, so a read after a write always observes it. Deleted jobs
    keep their row with ``deleted_at`` set; they are invisible to every read
    and their ids can never be inserted again.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connection() as conn:
                conn.execute(_SCHEMA)
                conn.execute(_INDEX)
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailable(f"Cannot open job store at {self.db_path}: {exc}") from exc
        LOGGER.info("job_store_opened", extra={"path": str(self.db_path)})

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _connection(self) -> "closing[sqlite3.Connection]":
        return closing(self._connect())

    def _transaction(self, conn: sqlite3.Connection) -> "_Transaction":
        return _Transaction(conn)

    def create(self, job: Job) -> Job:
        record = job.to_record()
        placeholders = ", ".join("?" for _ in _COLUMNS)
        try:
            with self._lock, self._connection() as conn, self._transaction(conn):
                conn.execute(
                    f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    tuple(record[column] for column in _COLUMNS),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateJobId(job.id) from exc
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Failed to insert job {job.id}: {exc}") from exc
        return job.copy()

    def get(self, job_id: str) -> Optional[Job]:
        try:
            with self._connection() as conn:
                row = conn.execute(
                    "SELECT * FROM jobs WHERE id = ? AND deleted_at IS NULL", (job_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Failed to read job {job_id}: {exc}") from exc
        return Job.from_record(dict(row)) if row else None

    def list(self) -> List[Job]:
        try:
            with self._connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE deleted_at IS NULL ORDER BY created_at DESC, id DESC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Failed to list jobs: {exc}") from exc
        return [Job.from_record(dict(row)) for row in rows]

    def update(self, job_id: str, mutator: JobMutator) -> Optional[Job]:
        try:
            with self._lock, self._connection() as conn, self._transaction(conn):
                row = conn.execute(
                    "SELECT * FROM jobs WHERE id = ? AND deleted_at IS NULL", (job_id,)
                ).fetchone()
                if not row:
                    return None
                job = Job.from_record(dict(row))
                mutator(job)
                record = job.to_record()
                assignments = ", ".join(f"{column} = ?" for column in _COLUMNS if column != "id")
                conn.execute(
                    f"UPDATE jobs SET {assignments} WHERE id = ?",
                    tuple(record[column] for column in _COLUMNS if column != "id") + (job_id,),
                )
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Failed to update job {job_id}: {exc}") from exc
        return job

    def delete(self, job_id: str) -> bool:
        try:
            with self._lock, self._connection() as conn, self._transaction(conn):
                cursor = conn.execute(
                    "UPDATE jobs SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                    (format_timestamp(utcnow()), job_id),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Failed to delete job {job_id}: {exc}") from exc

    def __len__(self) -> int:
        try:
            with self._connection() as conn:
                row = conn.execute("SELECT COUNT(*) FROM jobs WHERE deleted_at IS NULL").fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Failed to count jobs: {exc}") from exc
        return int(row[0])

    def deleted_ids(self) -> Iterator[tuple[str, Optional[datetime]]]:
        """Yield ``(id, deleted_at)`` for soft-deleted jobs, oldest deletion first."""

        try:
            with self._connection() as conn:
                rows = conn.execute(
                    "SELECT id, deleted_at FROM jobs WHERE deleted_at IS NOT NULL ORDER BY deleted_at"
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Failed to read deleted jobs: {exc}") from exc
        for row in rows:
            yield row["id"], parse_timestamp(row["deleted_at"])


class _Transaction:
    """``BEGIN IMMEDIATE`` ... ``COMMIT``/``ROLLBACK`` on an autocommit connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def __enter__(self) -> sqlite3.Connection:
        self._conn.execute("BEGIN IMMEDIATE")
        return self._conn

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self._conn.execute("COMMIT")
        else:
            self._conn.execute("ROLLBACK")
        return False


def build_store(backend: str, *, path: Path | str | None = None) -> JobStore:
    """Create the configured store backend."""

    normalized = str(backend or "").strip().lower()
    if normalized == "memory":
        return MemoryJobStore()
    if normalized == "sqlite":
        if not path:
            raise ValueError("SQLite job store requires a path")
        return SQLiteJobStore(path)
    raise ValueError(f"Unknown job store backend: {backend!r}")


__all__ = [
    "DuplicateJobId",
    "JobStore",
    "MemoryJobStore",
    "SQLiteJobStore",
    "build_store",
]
