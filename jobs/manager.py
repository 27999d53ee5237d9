"""Lifecycle manager: submission, background dispatch and terminal transitions."""
from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Optional, Set, Tuple

from config import (
    GENERATION_MAX_ATTEMPTS,
    GENERATION_MAX_CONCURRENCY,
    GENERATION_RETRY_BACKOFF,
    JOB_STORE_WRITE_ATTEMPTS,
    JOB_STORE_WRITE_BACKOFF,
    PROMPT_MAX_CHARS,
)
from observability.logger import bind_trace_id, clear_trace_id, get_logger, log_transition
from observability.metrics import Counter, get_registry, record_duration_ms

from .errors import GenerationFailed, InvalidArgument, InvalidTransition, NotFound, StoreUnavailable
from .models import CreationClock, Job, JobStatus
from .store import JobStore

if TYPE_CHECKING:  # pragma: no cover
    from services.image_backend import ImageBackend

LOGGER = get_logger("imagejobs.jobs.manager")
REGISTRY = get_registry()
SUBMITTED_COUNTER = REGISTRY.counter("jobs.submitted_total")
COMPLETED_COUNTER = REGISTRY.counter("jobs.completed_total")
FAILED_COUNTER = REGISTRY.counter("jobs.failed_total")
DELETED_COUNTER = REGISTRY.counter("jobs.deleted_total")
DISCARDED_COUNTER = REGISTRY.counter("jobs.callbacks_discarded_total")
RETRY_COUNTER = REGISTRY.counter("jobs.retries_total")
WRITE_RETRY_COUNTER = REGISTRY.counter("jobs.store_write_retries_total")
STRANDED_COUNTER = REGISTRY.counter("jobs.finalize_failed_total")
IN_FLIGHT_GAUGE = REGISTRY.gauge("jobs.in_flight")
DURATION_GAUGE = REGISTRY.gauge("generation.last_duration_ms")

Scheduler = Callable[[float, Callable[[], None]], None]


@dataclass(frozen=True)
class RetryPolicy:
    """How many tries an operation may use and how long to wait between them.

    ``max_attempts=1`` disables retries. For backend calls only failures
    flagged ``retryable`` by the backend are retried.
    """

    max_attempts: int = GENERATION_MAX_ATTEMPTS
    backoff: Tuple[float, ...] = GENERATION_RETRY_BACKOFF

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, failed_attempt: int) -> float:
        if not self.backoff:
            return 0.0
        index = min(max(failed_attempt, 1), len(self.backoff)) - 1
        return max(0.0, float(self.backoff[index]))


def _start_timer(delay: float, callback: Callable[[], None]) -> None:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()


def _result_image_url(result: object) -> str:
    image_url = getattr(result, "image_url", None)
    if not isinstance(image_url, str):
        raise GenerationFailed(f"Malformed image backend result: {type(result).__name__}")
    return image_url


class JobManager:
    """Accepts prompts, dispatches them to the image backend and records outcomes.

    Each backend attempt runs on a worker from a bounded pool, so at most
    ``max_concurrency`` backend calls are in flight at once. Retries wait on a
    timer, not on a worker. Terminal writes go through ``JobStore.update`` and
    are applied at most once per job: callbacks for deleted or already
    finished jobs are discarded.
    """

    def __init__(
        self,
        store: JobStore,
        backend: "ImageBackend",
        *,
        max_concurrency: int = GENERATION_MAX_CONCURRENCY,
        prompt_max_chars: int = PROMPT_MAX_CHARS,
        retry_policy: Optional[RetryPolicy] = None,
        write_policy: Optional[RetryPolicy] = None,
        scheduler: Scheduler = _start_timer,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._backend = backend
        self._prompt_max_chars = max(1, int(prompt_max_chars))
        self._retry_policy = retry_policy or RetryPolicy()
        self._write_policy = write_policy or RetryPolicy(
            max_attempts=JOB_STORE_WRITE_ATTEMPTS, backoff=JOB_STORE_WRITE_BACKOFF
        )
        self._scheduler = scheduler
        self._sleep = sleep
        self._clock = CreationClock()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_concurrency)),
            thread_name_prefix="image-job",
        )
        self._events: Dict[str, threading.Event] = {}
        self._active: Set[str] = set()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._closed = False

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def validate_prompt(self, prompt: object) -> str:
        if not isinstance(prompt, str):
            raise InvalidArgument("Prompt must be a string")
        text = prompt.strip()
        if not text:
            raise InvalidArgument("Prompt must not be empty")
        if len(text) > self._prompt_max_chars:
            raise InvalidArgument(f"Prompt exceeds {self._prompt_max_chars} characters")
        return text

    def submit(self, prompt: object, *, trace_id: Optional[str] = None) -> Job:
        text = self.validate_prompt(prompt)
        if self._closed:
            raise RuntimeError("Job manager is shut down")

        job = Job(id=uuid.uuid4().hex, prompt=text, created_at=self._clock.now(), trace_id=trace_id)
        with self._lock:
            self._events[job.id] = threading.Event()
        try:
            stored = self._store.create(job)
        except Exception:
            with self._lock:
                self._events.pop(job.id, None)
            raise
        SUBMITTED_COUNTER.inc()
        LOGGER.info("job_submitted", extra={"job_id": job.id, "prompt_chars": len(text)})

        with self._lock:
            self._active.add(job.id)
        if not self._submit_attempt(job.id, text, trace_id, 1):
            return self._store.get(job.id) or stored
        return stored

    def get(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise NotFound(job_id)
        return job

    def delete(self, job_id: str) -> None:
        if not self._store.delete(job_id):
            raise NotFound(job_id)
        DELETED_COUNTER.inc()
        LOGGER.info("job_deleted", extra={"job_id": job_id})
        self._release_waiter(job_id)

    def complete(self, job_id: str, image_url: Optional[str]) -> Optional[Job]:
        """Record a successful generation; ``None`` if the callback was discarded."""

        url = str(image_url or "").strip()
        if not url:
            return self.fail(job_id, "Image backend returned an empty result")
        return self._finalize(job_id, lambda job: job.mark_completed(url), JobStatus.COMPLETED, COMPLETED_COUNTER)

    def fail(self, job_id: str, message: str) -> Optional[Job]:
        """Record a failed generation; ``None`` if the callback was discarded."""

        reason = str(message or "").strip() or "Generation failed"
        return self._finalize(job_id, lambda job: job.mark_failed(reason), JobStatus.FAILED, FAILED_COUNTER)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job is finished, deleted, or its dispatch has ended."""

        with self._lock:
            event = self._events.get(job_id)
        if event is None:
            job = self._store.get(job_id)
            return job is None or job.status.is_terminal
        return event.wait(timeout)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until no job has backend work running or scheduled."""

        with self._idle:
            return self._idle.wait_for(lambda: not self._active, timeout=timeout)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._active)

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        self._executor.shutdown(wait=wait)
        if wait:
            self._backend.close()
        LOGGER.info("job_manager_stopped", extra={"waited": wait})

    def _finalize(
        self,
        job_id: str,
        mutator: Callable[[Job], None],
        status: JobStatus,
        counter: Counter,
    ) -> Optional[Job]:
        try:
            updated = self._store.update(job_id, mutator)
        except InvalidTransition as exc:
            DISCARDED_COUNTER.inc()
            LOGGER.info(
                "job_callback_ignored",
                extra={"job_id": job_id, "current_status": exc.current, "target_status": exc.target},
            )
            return None
        if updated is None:
            DISCARDED_COUNTER.inc()
            LOGGER.info("job_callback_discarded", extra={"job_id": job_id, "target_status": status.value})
            return None
        counter.inc()
        log_transition(
            LOGGER,
            job_id=job_id,
            status=updated.status.value,
            attempts=updated.attempts,
            error=updated.error_message,
        )
        self._release_waiter(job_id)
        return updated

    def _record_outcome(self, job_id: str, write: Callable[[], Optional[Job]]) -> Optional[Job]:
        """Apply a terminal write, retrying while the store is unavailable."""

        attempt = 0
        while True:
            attempt += 1
            try:
                return write()
            except StoreUnavailable as exc:
                if attempt >= self._write_policy.max_attempts:
                    STRANDED_COUNTER.inc()
                    LOGGER.error(
                        "job_finalize_failed",
                        extra={"job_id": job_id, "attempts": attempt, "error": str(exc)},
                    )
                    return None
                delay = self._write_policy.delay_for(attempt)
                WRITE_RETRY_COUNTER.inc()
                LOGGER.warning(
                    "job_finalize_retry",
                    extra={"job_id": job_id, "attempt": attempt, "delay_s": delay, "error": str(exc)},
                )
                if delay:
                    self._sleep(delay)

    def _submit_attempt(self, job_id: str, prompt: str, trace_id: Optional[str], attempt: int) -> bool:
        try:
            self._executor.submit(self._dispatch, job_id, prompt, trace_id, attempt)
        except RuntimeError:
            # Executor shut down before this attempt could be queued.
            LOGGER.warning("job_dispatch_rejected", extra={"job_id": job_id, "attempt": attempt})
            reason = "Job manager shut down before dispatch" if attempt == 1 else "Job manager shut down before retry"
            self._record_outcome(job_id, lambda: self.fail(job_id, reason))
            self._conclude(job_id)
            return False
        return True

    def _dispatch(self, job_id: str, prompt: str, trace_id: Optional[str], attempt: int) -> None:
        bind_trace_id(trace_id)
        rescheduled = False
        try:
            with IN_FLIGHT_GAUGE.track():
                rescheduled = self._attempt(job_id, prompt, trace_id, attempt)
        except Exception as exc:  # noqa: BLE001 - a crashed job must not take the worker down
            LOGGER.exception("job_dispatch_crashed", extra={"job_id": job_id})
            self._record_outcome(job_id, lambda: self.fail(job_id, f"Job dispatch crashed: {exc.__class__.__name__}"))
        finally:
            if not rescheduled:
                self._conclude(job_id)
            clear_trace_id()

    def _attempt(self, job_id: str, prompt: str, trace_id: Optional[str], attempt: int) -> bool:
        """Run one backend call; ``True`` when another attempt was scheduled."""

        if not self._begin_attempt(job_id, attempt):
            return False
        try:
            with record_duration_ms(DURATION_GAUGE):
                result = self._backend.generate(prompt)
            image_url = _result_image_url(result)
        except GenerationFailed as exc:
            error = exc
        except Exception as exc:  # noqa: BLE001 - adapter bugs still fail the job
            LOGGER.exception("image_backend_crashed", extra={"job_id": job_id})
            error = GenerationFailed(f"Image backend error: {exc.__class__.__name__}: {exc}")
        else:
            self._record_outcome(job_id, lambda: self.complete(job_id, image_url))
            return False

        LOGGER.warning(
            "job_attempt_failed",
            extra={
                "job_id": job_id,
                "attempt": attempt,
                "error": error.message,
                "retryable": error.retryable,
            },
        )
        if error.retryable and attempt < self._retry_policy.max_attempts:
            delay = self._retry_policy.delay_for(attempt)
            RETRY_COUNTER.inc()
            LOGGER.info("job_retry_scheduled", extra={"job_id": job_id, "attempt": attempt + 1, "delay_s": delay})

            def _resume() -> None:
                self._submit_attempt(job_id, prompt, trace_id, attempt + 1)

            if delay:
                self._scheduler(delay, _resume)
            else:
                _resume()
            return True
        self._record_outcome(job_id, lambda: self.fail(job_id, error.message))
        return False

    def _begin_attempt(self, job_id: str, attempt: int) -> bool:
        """Record the attempt number; ``False`` when the job is gone or already finished."""

        def _mutate(job: Job) -> None:
            if job.status.is_terminal:
                raise InvalidTransition(job.id, job.status.value, JobStatus.PENDING.value)
            job.attempts = attempt

        try:
            updated = self._store.update(job_id, _mutate)
        except InvalidTransition:
            LOGGER.info("job_dispatch_skipped", extra={"job_id": job_id, "reason": "terminal"})
            return False
        except StoreUnavailable as exc:
            LOGGER.warning("job_attempt_not_recorded", extra={"job_id": job_id, "error": str(exc)})
            return True
        if updated is None:
            DISCARDED_COUNTER.inc()
            LOGGER.info("job_dispatch_skipped", extra={"job_id": job_id, "reason": "deleted"})
            return False
        return True

    def _conclude(self, job_id: str) -> None:
        with self._idle:
            self._active.discard(job_id)
            self._idle.notify_all()
        self._release_waiter(job_id)

    def _release_waiter(self, job_id: str) -> None:
        with self._lock:
            event = self._events.pop(job_id, None)
        if event:
            event.set()


__all__ = ["JobManager", "RetryPolicy"]
