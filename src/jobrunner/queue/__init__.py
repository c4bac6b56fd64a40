"""Durable job queue, processor registry and worker pool."""

from .backends import QueueBackend
from .context import JobContext
from .errors import (
    DuplicateProcessorError,
    InvalidJobState,
    JobNotFound,
    JobQueueError,
    JobTimeoutError,
    PermanentJobError,
    PoolStateError,
    ProcessorNotFound,
    QueueNotFound,
    QueueUnavailable,
    RegistryFrozen,
)
from .factory import create_queue_backend
from .models import Job, JobPriority, JobResult, JobStatus, PoolStats, QueueStats, StateTransition
from .redis_backend import RedisQueue
from .registry import FunctionProcessor, JobProcessor, ProcessorRegistry, job_processor
from .retry import RetryPolicy
from .sqlite_backend import SQLiteQueue
from .worker import PoolState, WorkerPool

__all__ = [
    "QueueBackend",
    "SQLiteQueue",
    "RedisQueue",
    "create_queue_backend",
    "RetryPolicy",
    "Job",
    "JobPriority",
    "JobResult",
    "JobStatus",
    "PoolStats",
    "QueueStats",
    "StateTransition",
    "JobContext",
    "JobProcessor",
    "FunctionProcessor",
    "ProcessorRegistry",
    "job_processor",
    "PoolState",
    "WorkerPool",
    "JobQueueError",
    "QueueUnavailable",
    "QueueNotFound",
    "JobNotFound",
    "InvalidJobState",
    "ProcessorNotFound",
    "DuplicateProcessorError",
    "RegistryFrozen",
    "PoolStateError",
    "JobTimeoutError",
    "PermanentJobError",
]
