"""Exception hierarchy for the queue, registry and worker pool."""


class JobQueueError(Exception):
    """Base class for every error raised by jobrunner."""


class QueueUnavailable(JobQueueError):
    """The backing store cannot be reached or refused the operation."""


class JobNotFound(JobQueueError):
    def __init__(self, job_id: str):
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class QueueNotFound(JobQueueError):
    def __init__(self, queue_name: str):
        super().__init__(f"queue not found: {queue_name}")
        self.queue_name = queue_name


class InvalidJobState(JobQueueError):
    """Requested transition is not allowed from the job's current state."""


class ProcessorNotFound(JobQueueError):
    def __init__(self, job_type: str):
        super().__init__(f"no processor registered for job type: {job_type}")
        self.job_type = job_type


class DuplicateProcessorError(JobQueueError):
    """A job type is already owned by a different processor."""


class RegistryFrozen(JobQueueError):
    """Processors cannot be registered once the pool has started."""


class PoolStateError(JobQueueError):
    """Start/stop called in a lifecycle state that does not allow it."""


class JobTimeoutError(JobQueueError):
    """A processor did not finish before its per-job deadline."""


class PermanentJobError(Exception):
    """Raised by processors for failures that retrying cannot fix.

    The job is dead-lettered immediately instead of consuming its retry budget.
    """
