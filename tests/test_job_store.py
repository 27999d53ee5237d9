from __future__ import annotations

import sqlite3
import sys
import threading
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from jobs.errors import InvalidTransition, StoreUnavailable  # noqa: E402
from jobs.models import Job, JobStatus  # noqa: E402
from jobs.store import (  # noqa: E402
    DuplicateJobId,
    MemoryJobStore,
    SQLiteJobStore,
    build_store,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryJobStore()
    return SQLiteJobStore(tmp_path / "jobs.sqlite3")


def test_create_then_get_returns_equal_copy(store):
    job = Job(id="job-1", prompt="a red cube")
    store.create(job)

    loaded = store.get("job-1")

    assert loaded == job
    assert loaded is not job
    assert len(store) == 1


def test_get_unknown_returns_none(store):
    assert store.get("missing") is None


def test_returned_jobs_cannot_mutate_store(store):
    store.create(Job(id="job-1", prompt="a red cube"))

    loaded = store.get("job-1")
    loaded.mark_completed("http://x/a.jpg")

    assert store.get("job-1").status is JobStatus.PENDING


def test_update_applies_mutator_atomically(store):
    store.create(Job(id="job-1", prompt="a red cube"))

    updated = store.update("job-1", lambda job: job.mark_completed("http://x/a.jpg"))

    assert updated.status is JobStatus.COMPLETED
    assert store.get("job-1").image_url == "http://x/a.jpg"


def test_update_missing_job_returns_none(store):
    assert store.update("missing", lambda job: job.mark_failed("boom")) is None


def test_update_mutator_error_leaves_job_unchanged(store):
    store.create(Job(id="job-1", prompt="a red cube"))
    store.update("job-1", lambda job: job.mark_failed("boom"))

    with pytest.raises(InvalidTransition):
        store.update("job-1", lambda job: job.mark_completed("http://x/a.jpg"))

    loaded = store.get("job-1")
    assert loaded.status is JobStatus.FAILED
    assert loaded.image_url is None


def test_delete_hides_job_and_retires_id(store):
    store.create(Job(id="job-1", prompt="a red cube"))

    assert store.delete("job-1") is True
    assert store.delete("job-1") is False
    assert store.get("job-1") is None
    assert store.list() == []
    assert store.update("job-1", lambda job: job.mark_failed("late")) is None
    with pytest.raises(DuplicateJobId):
        store.create(Job(id="job-1", prompt="again"))


def test_duplicate_id_rejected(store):
    store.create(Job(id="job-1", prompt="a red cube"))

    with pytest.raises(DuplicateJobId):
        store.create(Job(id="job-1", prompt="a blue cube"))


def test_concurrent_updates_on_distinct_jobs_do_not_interfere(store):
    ids = [f"job-{index}" for index in range(20)]
    for job_id in ids:
        store.create(Job(id=job_id, prompt=f"prompt {job_id}"))

    def _complete(job_id: str) -> None:
        store.update(job_id, lambda job: job.mark_completed(f"http://x/{job.id}.jpg"))

    threads = [threading.Thread(target=_complete, args=(job_id,)) for job_id in ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    for job_id in ids:
        loaded = store.get(job_id)
        assert loaded.status is JobStatus.COMPLETED
        assert loaded.image_url == f"http://x/{job_id}.jpg"


def test_sqlite_store_survives_reopen(tmp_path):
    path = tmp_path / "jobs.sqlite3"
    first = SQLiteJobStore(path)
    first.create(Job(id="job-1", prompt="a red cube", trace_id="trace-1"))
    first.update("job-1", lambda job: job.mark_completed("http://x/a.jpg"))

    reopened = SQLiteJobStore(path)
    loaded = reopened.get("job-1")

    assert loaded.status is JobStatus.COMPLETED
    assert loaded.image_url == "http://x/a.jpg"
    assert loaded.trace_id == "trace-1"


def test_sqlite_store_keeps_soft_deleted_rows_for_audit(tmp_path):
    store = SQLiteJobStore(tmp_path / "jobs.sqlite3")
    store.create(Job(id="job-1", prompt="a red cube"))
    store.create(Job(id="job-2", prompt="a blue cube"))
    store.delete("job-1")

    audit = list(store.deleted_ids())

    assert [job_id for job_id, _ in audit] == ["job-1"]
    assert audit[0][1] is not None
    assert len(store) == 1


def test_sqlite_open_failure_raises_store_unavailable(tmp_path):
    with pytest.raises(StoreUnavailable):
        SQLiteJobStore(tmp_path)


def test_sqlite_errors_surface_as_store_unavailable(tmp_path, monkeypatch):
    store = SQLiteJobStore(tmp_path / "jobs.sqlite3")

    def _broken_connect():
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "_connect", _broken_connect)

    with pytest.raises(StoreUnavailable):
        store.create(Job(id="job-1", prompt="a red cube"))
    with pytest.raises(StoreUnavailable):
        store.get("job-1")
    with pytest.raises(StoreUnavailable):
        store.list()
    with pytest.raises(StoreUnavailable):
        store.delete("job-1")


def test_build_store_selects_backend(tmp_path):
    assert isinstance(build_store("memory"), MemoryJobStore)
    assert isinstance(build_store("sqlite", path=tmp_path / "jobs.sqlite3"), SQLiteJobStore)
    with pytest.raises(ValueError):
        build_store("redis")
    with pytest.raises(ValueError):
        build_store("sqlite")
