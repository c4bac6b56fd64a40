"""Abstract base class for durable queue backends.

This module defines the queue contract shared by every store and the job state
machine that all of them apply. Backends only decide *how* a transition is
made atomic (SQLite transaction, Redis WATCH/MULTI); *what* the transition is
lives here so that retry, dead-letter and visibility-timeout semantics are
identical across stores.
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidJobState
from .models import Job, JobStatus, QueueStats, StateTransition
from .retry import RetryPolicy

MAX_ERROR_LENGTH = 500
STALE_CLAIM_REASON = "visibility timeout expired (worker lost)"


class QueueBackend(ABC):
    """Abstract queue interface for local/distributed backends.

    Implementations must provide:
    - Atomic claim: no two concurrent callers may claim the same job
    - Push-if-absent enqueue (duplicate id doesn't corrupt state)
    - Visibility timeout: stale claims are reclaimed during dequeue
    - Heartbeat support for long-running jobs
    """

    def __init__(
        self,
        queue_name: str = "default",
        default_max_attempts: int = 3,
        retry_policy: Optional[RetryPolicy] = None,
        visibility_timeout_s: float = 600.0,
        poll_interval_s: float = 0.5,
    ):
        if default_max_attempts < 1:
            raise ValueError("default_max_attempts must be >= 1")
        self.queue_name = queue_name
        self.default_max_attempts = default_max_attempts
        self.retry_policy = retry_policy or RetryPolicy()
        self.visibility_timeout_s = visibility_timeout_s
        self.poll_interval_s = poll_interval_s

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    # ------------------------------------------------------------------
    # Store operations
    # ------------------------------------------------------------------

    @abstractmethod
    def enqueue(self, job: Job) -> Job:
        """Add a job in ``pending`` state (push-if-absent).

        Args:
            job: Job specification to enqueue

        Returns:
            The stored job. If a job with the same id already exists it is
            returned unchanged and nothing is written.

        Raises:
            QueueUnavailable: If the backing store cannot be reached
        """

    @abstractmethod
    def dequeue(self, worker_id: Optional[str] = None) -> Optional[Job]:
        """Single non-blocking claim attempt.

        Implementation notes:
        - MUST be atomic across threads and processes
        - Reclaims stale processing jobs before picking the next one
        - Order: priority DESC, available_at ASC, created_at ASC
        - Only jobs whose available_at has passed are eligible
        """

    @abstractmethod
    def complete_job(
        self, job_id: str, result: Optional[Dict[str, Any]] = None, worker_id: Optional[str] = None
    ) -> Job:
        """Mark a processing job completed (idempotent on completed jobs).

        Args:
            job_id: Job identifier
            result: Optional processor result stored with the job
            worker_id: If given, the claim must still belong to this worker

        Raises:
            JobNotFound: Unknown job id
            InvalidJobState: Job is pending/failed or claimed by another worker
        """

    @abstractmethod
    def fail_job(
        self, job_id: str, reason: str, retry: bool = True, worker_id: Optional[str] = None
    ) -> Job:
        """Record a failure and either requeue or dead-letter the job.

        Args:
            job_id: Job identifier
            reason: Error message (truncated to 500 chars)
            retry: If False, dead-letter regardless of remaining attempts
            worker_id: If given, the claim must still belong to this worker

        Retry logic:
        - retry and attempts < max_attempts: back to 'pending' after backoff
        - otherwise: 'failed' (terminal)
        """

    @abstractmethod
    def get_queue_stats(self) -> QueueStats:
        """Counts by status; eventually consistent under concurrent mutation."""

    @abstractmethod
    def get_job(self, job_id: str) -> Job:
        """Fetch a job by id (raises JobNotFound)."""

    @abstractmethod
    def list_jobs(
        self, status: Optional[str] = None, page: int = 1, limit: int = 50
    ) -> Tuple[List[Job], int]:
        """Page through jobs, oldest first.

        Returns:
            Tuple of (jobs on the page, total matching jobs)
        """

    @abstractmethod
    def delete_job(self, job_id: str) -> None:
        """Remove a terminal job. Pending/processing jobs cannot be deleted."""

    @abstractmethod
    def cleanup_old_jobs(self, older_than_s: float) -> int:
        """Retention: drop completed/failed jobs finished more than N seconds ago.

        Returns:
            Count of removed jobs
        """

    @abstractmethod
    def update_heartbeat(self, job_id: str) -> None:
        """Extend the visibility window of a processing job.

        Implementation notes:
        - Called periodically by the worker while the processor runs
        - Only affects jobs in 'processing' state
        """

    @abstractmethod
    def requeue_stale(self) -> int:
        """Crash recovery: reclaim processing jobs with an expired heartbeat.

        Returns:
            Count of reclaimed jobs (requeued or dead-lettered)
        """

    @abstractmethod
    def get_transitions(self, job_id: str) -> List[StateTransition]:
        """Audit trail for one job, oldest first."""

    def close(self) -> None:
        """Release connections held by the backend."""

    # ------------------------------------------------------------------
    # Operations built on the primitives above
    # ------------------------------------------------------------------

    def blocking_dequeue(
        self,
        timeout: float,
        worker_id: Optional[str] = None,
        interrupt: Optional[threading.Event] = None,
    ) -> Optional[Job]:
        """Claim the next job, waiting up to ``timeout`` seconds.

        Returns None on timeout (the normal idle path) or as soon as
        ``interrupt`` is set.
        """
        deadline = time.monotonic() + max(timeout, 0.0)

        while True:
            if interrupt is not None and interrupt.is_set():
                return None

            job = self.dequeue(worker_id)
            if job is not None:
                return job

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None

            pause = min(self.poll_interval_s, remaining)
            if interrupt is not None:
                if interrupt.wait(pause):
                    return None
            else:
                time.sleep(pause)

    def retry_job(self, job_id: str) -> Job:
        """Re-run a dead-lettered job.

        The failed job itself stays terminal; a fresh clone with a new id and
        ``metadata['retry_of']`` pointing at the original is enqueued instead.
        """
        job = self.get_job(job_id)
        if JobStatus(job.status) is not JobStatus.FAILED:
            raise InvalidJobState(f"cannot retry job with status: {JobStatus(job.status).value}")

        clone = Job(
            type=job.type,
            payload=job.payload,
            priority=job.priority,
            max_attempts=job.max_attempts,
            metadata={**job.metadata, "retry_of": job.id},
        )
        return self.enqueue(clone)

    # ------------------------------------------------------------------
    # State machine (pure functions over Job, applied inside store transactions)
    # ------------------------------------------------------------------

    def _prepare_new(self, job: Job, now: datetime) -> Job:
        return job.model_copy(
            update={
                "status": JobStatus.PENDING,
                "attempts": 0,
                "max_attempts": job.max_attempts or self.default_max_attempts,
                "queue": self.queue_name,
                "updated_at": now,
                "started_at": None,
                "completed_at": None,
                "last_heartbeat": None,
                "worker_id": None,
                "last_error": None,
                "result": None,
            }
        )

    def _claimed(self, job: Job, worker_id: Optional[str], now: datetime) -> Job:
        return job.model_copy(
            update={
                "status": JobStatus.PROCESSING,
                "attempts": job.attempts + 1,
                "worker_id": worker_id,
                "started_at": now,
                "last_heartbeat": now,
                "updated_at": now,
            }
        )

    def _completed(
        self, job: Job, result: Optional[Dict[str, Any]], worker_id: Optional[str], now: datetime
    ) -> Optional[Job]:
        """Return the completed job, or None when it already was completed."""
        status = JobStatus(job.status)
        if status is JobStatus.COMPLETED:
            return None
        if status is not JobStatus.PROCESSING:
            raise InvalidJobState(f"cannot complete job {job.id} with status: {status.value}")
        self._check_claim(job, worker_id)

        return job.model_copy(
            update={
                "status": JobStatus.COMPLETED,
                "completed_at": now,
                "updated_at": now,
                "last_error": None,
                "result": result,
            }
        )

    def _failed(
        self, job: Job, reason: str, retry: bool, worker_id: Optional[str], now: datetime
    ) -> Job:
        status = JobStatus(job.status)
        if status is not JobStatus.PROCESSING:
            raise InvalidJobState(f"cannot fail job {job.id} with status: {status.value}")
        self._check_claim(job, worker_id)

        error = (reason or "unknown error")[:MAX_ERROR_LENGTH]
        max_attempts = job.max_attempts or self.default_max_attempts

        if retry and job.attempts < max_attempts:
            return job.model_copy(
                update={
                    "status": JobStatus.PENDING,
                    "last_error": error,
                    "worker_id": None,
                    "updated_at": now,
                    "available_at": now + self.retry_policy.delay(job.attempts),
                }
            )

        return job.model_copy(
            update={
                "status": JobStatus.FAILED,
                "last_error": error,
                "worker_id": None,
                "updated_at": now,
                "completed_at": now,
            }
        )

    def _reclaimed(self, job: Job, now: datetime) -> Job:
        return self._failed(job, STALE_CLAIM_REASON, retry=True, worker_id=None, now=now)

    @staticmethod
    def _check_claim(job: Job, worker_id: Optional[str]) -> None:
        if worker_id is not None and job.worker_id is not None and job.worker_id != worker_id:
            raise InvalidJobState(
                f"claim on job {job.id} is held by {job.worker_id}, not {worker_id}"
            )

    @staticmethod
    def _transition(
        job: Job,
        from_state: Optional[JobStatus],
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> StateTransition:
        return StateTransition(
            job_id=job.id,
            from_state=JobStatus(from_state).value if from_state is not None else None,
            to_state=JobStatus(job.status).value,
            timestamp=job.updated_at,
            worker_id=worker_id,
            error_snippet=error[:200] if error else None,
        )
