from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from jobs.errors import InvalidTransition  # noqa: E402
from jobs.models import CreationClock, Job, JobStatus, utcnow  # noqa: E402


def test_new_job_is_pending_without_outcome_fields():
    job = Job(id="job-1", prompt="a red cube")

    assert job.status is JobStatus.PENDING
    assert job.image_url is None
    assert job.error_message is None
    assert job.completed_at is None
    assert job.failed_at is None
    assert job.created_at is not None


def test_mark_completed_sets_only_image_fields():
    job = Job(id="job-1", prompt="a red cube")
    job.mark_completed("http://x/a.jpg")

    assert job.status is JobStatus.COMPLETED
    assert job.image_url == "http://x/a.jpg"
    assert job.error_message is None
    assert job.completed_at is not None
    assert job.failed_at is None


def test_mark_failed_sets_only_error_fields():
    job = Job(id="job-1", prompt="a red cube")
    job.mark_failed("quota exceeded")

    assert job.status is JobStatus.FAILED
    assert job.error_message == "quota exceeded"
    assert job.image_url is None
    assert job.failed_at is not None
    assert job.completed_at is None


@pytest.mark.parametrize("first", ["complete", "fail"])
def test_terminal_states_reject_further_transitions(first):
    job = Job(id="job-1", prompt="a red cube")
    if first == "complete":
        job.mark_completed("http://x/a.jpg")
    else:
        job.mark_failed("boom")
    before = job.to_dict()

    with pytest.raises(InvalidTransition):
        job.mark_completed("http://x/b.jpg")
    with pytest.raises(InvalidTransition):
        job.mark_failed("again")

    assert job.to_dict() == before


def test_to_dict_uses_wire_field_names():
    job = Job(id="job-1", prompt="a red cube")
    job.mark_completed("http://x/a.jpg")

    payload = job.to_dict()

    assert set(payload) == {
        "id",
        "prompt",
        "status",
        "imageUrl",
        "errorMessage",
        "createdAt",
        "completedAt",
        "failedAt",
    }
    assert payload["status"] == "completed"
    assert payload["imageUrl"] == "http://x/a.jpg"
    assert payload["errorMessage"] is None
    assert payload["failedAt"] is None
    assert payload["createdAt"].endswith("Z")


def test_record_keeps_internal_fields():
    job = Job(id="job-1", prompt="a red cube", attempts=2, trace_id="trace-1")
    job.mark_failed("timeout")

    restored = Job.from_record(job.to_record())

    assert restored == job


def test_copy_is_detached():
    job = Job(id="job-1", prompt="a red cube")
    clone = job.copy()
    clone.mark_completed("http://x/a.jpg")

    assert job.status is JobStatus.PENDING


def test_creation_clock_is_strictly_increasing(monkeypatch):
    frozen = utcnow()
    monkeypatch.setattr("jobs.models.utcnow", lambda: frozen)
    clock = CreationClock()

    stamps = [clock.now() for _ in range(5)]

    assert stamps[0] == frozen
    assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))
    assert stamps[-1] - stamps[0] == timedelta(microseconds=4)
