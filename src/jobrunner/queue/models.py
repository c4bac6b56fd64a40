"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time used for every job timestamp."""
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending → processing    (worker claims job, attempts += 1)
        processing → completed  (processor succeeded)
        processing → pending    (recoverable failure, attempts < max_attempts)
        processing → failed     (retries exhausted, permanent error, or no processor)

    completed and failed are terminal.
    """

    PENDING = "pending"  # Queued, waiting for a worker
    PROCESSING = "processing"  # Claimed by exactly one worker
    COMPLETED = "completed"  # Processor finished successfully
    FAILED = "failed"  # Dead-lettered

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Keeps -priority * 1e13 + epoch_ms exact in a Redis sorted-set score (< 2**53)
MAX_PRIORITY = 100


class JobPriority(IntEnum):
    """Common priority levels. Any int from 0 to MAX_PRIORITY is accepted."""

    LOW = 1
    NORMAL = 5
    HIGH = 8
    CRITICAL = 10


class Job(BaseModel):
    """Unit of asynchronous work and its lifecycle state.

    Producers only need to set ``type`` and ``payload``; the queue stamps the
    remaining fields when the job is enqueued.
    """

    id: str = Field(default_factory=new_job_id, min_length=1, description="Unique job identifier")
    type: str = Field(..., min_length=1, description="Job type used to select a processor")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Processor-defined data")
    priority: int = Field(
        default=JobPriority.NORMAL, ge=0, le=MAX_PRIORITY, description="Higher = claimed first"
    )
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    attempts: int = Field(default=0, ge=0, description="Number of claims so far")
    max_attempts: Optional[int] = Field(
        default=None, ge=1, description="Retry ceiling (None = queue default)"
    )
    queue: Optional[str] = Field(default=None, description="Logical queue holding the job")
    created_at: datetime = Field(default_factory=utcnow, description="Enqueue time")
    updated_at: datetime = Field(default_factory=utcnow, description="Last state change")
    available_at: datetime = Field(
        default_factory=utcnow, description="Earliest time the job may be claimed"
    )
    started_at: Optional[datetime] = Field(default=None, description="Last claim time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal state time")
    last_heartbeat: Optional[datetime] = Field(default=None, description="Last worker heartbeat")
    worker_id: Optional[str] = Field(default=None, description="Worker holding the claim")
    last_error: Optional[str] = Field(default=None, description="Most recent failure message")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Processor result")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="User-defined tags")

    @field_validator(
        "created_at",
        "updated_at",
        "available_at",
        "started_at",
        "completed_at",
        "last_heartbeat",
    )
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are taken to be UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal

    @property
    def retries_left(self) -> int:
        if self.max_attempts is None:
            return 0
        return max(self.max_attempts - self.attempts, 0)


class JobResult(BaseModel):
    """Outcome of one processing attempt as observed by a worker."""

    job_id: str = Field(..., description="Job identifier")
    status: JobStatus = Field(..., description="Status the job was resolved to")
    error_message: Optional[str] = Field(default=None, description="Error details if failed")
    duration_s: float = Field(default=0.0, ge=0.0, description="Processing time in seconds")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Processor result")


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=utcnow, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")


class QueueStats(BaseModel):
    """Read-only snapshot of a queue, eventually consistent."""

    queue_name: str
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class PoolStats(BaseModel):
    """Pool-level facts merged with the queue snapshot."""

    name: str
    workers: int
    registered_processors: int
    job_types: List[str] = Field(default_factory=list)
    is_running: bool
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    queue: QueueStats
