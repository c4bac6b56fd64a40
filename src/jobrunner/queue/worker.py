"""Worker pool implementation using OS threads.

This module provides the fixed-size pool that drains one durable queue:
- N long-lived worker threads pulling jobs with a blocking dequeue
- Per-job timeout enforced from the worker while the processor runs in its
  own single-thread executor
- Heartbeats while a job runs so its claim is not reclaimed
- Error classification (permanent vs transient vs missing processor)
- Periodic stats logging from a monitor thread
- Graceful shutdown through a shared stop event
"""

import os
import socket
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as futures_wait
from enum import Enum
from typing import Any, Dict, List, Optional

from ..logs import LogContext, get_logger
from ..models import PoolConfig
from .backends import QueueBackend
from .context import JobContext
from .errors import (
    InvalidJobState,
    JobQueueError,
    JobTimeoutError,
    PermanentJobError,
    PoolStateError,
    ProcessorNotFound,
)
from .models import Job, JobResult, JobStatus, PoolStats
from .registry import JobProcessor, ProcessorRegistry

logger = get_logger(__name__)


class PoolState(str, Enum):
    NEW = "new"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class WorkerPool:
    """Thread-based worker pool bound to one queue.

    Features:
    - Fixed concurrency (the pool size is the only bound)
    - Registry frozen on start, so dispatch never races registration
    - Context manager for start/stop
    - Job-level errors never escape a worker; store errors are logged and
      the worker backs off before retrying

    Example:
        pool = WorkerPool(queue, n_workers=4)
        pool.register_processor(TranscodeProcessor())
        with pool:
            pool.enqueue(Job(type="transcode", payload={"src": "a.mp4"}))
    """

    def __init__(
        self,
        queue: QueueBackend,
        n_workers: Optional[int] = None,
        registry: Optional[ProcessorRegistry] = None,
        config: Optional[PoolConfig] = None,
        name: Optional[str] = None,
    ):
        """Initialize worker pool.

        Args:
            queue: Durable queue shared by all workers
            n_workers: Number of parallel workers (default: config.workers)
            registry: Processor registry (a private one is created if omitted)
            config: Pool timing parameters
            name: Pool name used in logs and stats (default: queue name)
        """
        self.queue = queue
        self.config = config or PoolConfig()
        self.n_workers = n_workers if n_workers is not None else self.config.workers
        if self.n_workers < 1:
            raise ValueError("n_workers must be >= 1")
        self.registry = registry if registry is not None else ProcessorRegistry()
        self.name = name or queue.queue_name

        self._state = PoolState.NEW
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._monitor: Optional[threading.Thread] = None

        self._counters: Dict[str, int] = {"processed": 0, "succeeded": 0, "failed": 0, "retried": 0}
        self._counter_lock = threading.Lock()

        self.log = logger.bind(pool=self.name)

    def __enter__(self):
        if self.state is PoolState.NEW:
            self.start()
        return self

    def __exit__(self, *args):
        if self.state is PoolState.RUNNING:
            self.stop()

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is PoolState.RUNNING

    def register_processor(self, processor: JobProcessor, replace: bool = False) -> None:
        """Register a processor; only allowed before start (raises RegistryFrozen after)."""
        self.registry.register(processor, replace=replace)
        self.log.info("processor registered", job_types=processor.get_job_types())

    def enqueue(self, job: Job) -> Job:
        return self.queue.enqueue(job)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the worker threads and the monitor thread.

        Raises:
            PoolStateError: If the pool was already started
        """
        with self._state_lock:
            if self._state is not PoolState.NEW:
                raise PoolStateError(
                    f"pool {self.name} cannot start from state {self._state.value}"
                )
            self._state = PoolState.RUNNING

        self.registry.freeze()

        prefix = f"{socket.gethostname()}-{os.getpid()}-{self.name}"
        for i in range(self.n_workers):
            worker_id = f"{prefix}-w{i}"
            thread = threading.Thread(
                target=self._worker_loop, args=(worker_id,), name=worker_id, daemon=True
            )
            thread.start()
            self._threads.append(thread)

        self._monitor = threading.Thread(
            target=self._monitor_loop, name=f"{self.name}-monitor", daemon=True
        )
        self._monitor.start()

        self.log.info(
            "worker pool started",
            workers=self.n_workers,
            job_types=self.registry.job_types(),
        )

    def request_stop(self) -> None:
        """Set the stop signal without waiting (stop() still has to be called)."""
        self._stop_event.set()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Signal workers to stop and wait for them.

        In-flight jobs keep their own per-job deadline. Workers still busy
        after ``timeout`` are abandoned; their jobs stay 'processing' and are
        reclaimed once the visibility timeout expires.

        Args:
            timeout: Seconds to wait (default: config.shutdown_timeout_s)

        Returns:
            True if every worker exited within the timeout

        Raises:
            PoolStateError: If the pool is already stopping or stopped
        """
        with self._state_lock:
            if self._state in (PoolState.STOPPING, PoolState.STOPPED):
                raise PoolStateError(f"pool {self.name} is already {self._state.value}")
            if self._state is PoolState.NEW:
                self._state = PoolState.STOPPED
                return True
            self._state = PoolState.STOPPING

        self.log.info("stopping worker pool")
        self._stop_event.set()

        timeout = self.config.shutdown_timeout_s if timeout is None else timeout
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(deadline - time.monotonic(), 0.0))

        if self._monitor is not None:
            self._monitor.join(max(deadline - time.monotonic(), 0.0))

        abandoned = [t.name for t in self._threads if t.is_alive()]
        if abandoned:
            self.log.warning("workers still busy after shutdown timeout", abandoned=abandoned)

        with self._state_lock:
            self._state = PoolState.STOPPED

        self.log.info("worker pool stopped", **self._snapshot())
        return not abandoned

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _count(self, **deltas: int) -> None:
        with self._counter_lock:
            for key, delta in deltas.items():
                self._counters[key] += delta

    def _snapshot(self) -> Dict[str, int]:
        with self._counter_lock:
            return dict(self._counters)

    def get_stats(self) -> PoolStats:
        """Pool-level facts merged with the queue snapshot."""
        return PoolStats(
            name=self.name,
            workers=self.n_workers,
            registered_processors=len(self.registry),
            job_types=self.registry.job_types(),
            is_running=self.is_running,
            queue=self.queue.get_queue_stats(),
            **self._snapshot(),
        )

    def _monitor_loop(self) -> None:
        while not self._stop_event.wait(self.config.monitor_interval_s):
            try:
                stats = self.get_stats()
            except JobQueueError as e:
                self.log.warning("queue stats unavailable", error=str(e))
                continue

            self.log.info(
                "pool stats",
                workers=stats.workers,
                processed=stats.processed,
                succeeded=stats.succeeded,
                failed=stats.failed,
                retried=stats.retried,
                pending=stats.queue.pending,
                processing=stats.queue.processing,
                completed=stats.queue.completed,
                dead=stats.queue.failed,
            )

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _worker_loop(self, worker_id: str) -> None:
        log = self.log.bind(worker_id=worker_id)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{worker_id}-job")
        log.debug("worker started")

        try:
            while not self._stop_event.is_set():
                try:
                    self._process_next_job(worker_id, executor)
                except JobQueueError as e:
                    log.error("queue error, backing off", error=str(e))
                    self._stop_event.wait(self.config.error_backoff_s)
                except Exception:
                    log.exception("unexpected worker error, backing off")
                    self._stop_event.wait(self.config.error_backoff_s)
        finally:
            executor.shutdown(wait=False)
            log.debug("worker exited")

    def _process_next_job(
        self, worker_id: str, executor: ThreadPoolExecutor
    ) -> Optional[JobResult]:
        """Claim one job and resolve it. Returns None when the dequeue timed out."""
        job = self.queue.blocking_dequeue(
            self.config.dequeue_timeout_s, worker_id=worker_id, interrupt=self._stop_event
        )
        if job is None:
            return None

        with LogContext(job_id=job.id, job_type=job.type, worker_id=worker_id):
            processor = self.registry.lookup(job.type)
            if processor is None:
                # Configuration defect: retrying cannot help
                reason = str(ProcessorNotFound(job.type))
                self.log.error("no processor for job", attempt=job.attempts)
                return self._resolve_failure(
                    job, worker_id, reason, retry=False, started=time.monotonic()
                )

            return self._run_job(job, processor, worker_id, executor)

    def _run_job(
        self,
        job: Job,
        processor: JobProcessor,
        worker_id: str,
        executor: ThreadPoolExecutor,
    ) -> JobResult:
        timeout_s = processor.timeout_s or self.config.job_timeout_s
        ctx = JobContext(worker_id, timeout_s=timeout_s, shutdown=self._stop_event)
        started = time.monotonic()
        self.log.info("job started", attempt=job.attempts, max_attempts=job.max_attempts)

        future = executor.submit(processor.process_job, ctx, job)
        try:
            output = self._await_result(future, ctx, job)
        except PermanentJobError as e:
            return self._resolve_failure(
                job, worker_id, f"PermanentJobError: {e}", retry=False, started=started
            )
        except JobTimeoutError as e:
            ctx.cancel()
            result = self._resolve_failure(job, worker_id, str(e), retry=True, started=started)
            self._wait_for_straggler(future)
            return result
        except Exception as e:
            return self._resolve_failure(
                job, worker_id, f"{type(e).__name__}: {e}", retry=True, started=started
            )

        return self._resolve_success(job, worker_id, output, started)

    def _await_result(self, future: Future, ctx: JobContext, job: Job) -> Any:
        """Wait for the processor, heartbeating until it returns or the deadline passes."""
        while True:
            remaining = ctx.remaining()
            wait_s = self.config.heartbeat_interval_s
            if remaining is not None:
                wait_s = min(wait_s, remaining)

            done, _ = futures_wait([future], timeout=wait_s)
            if done:
                return future.result()

            if ctx.remaining() == 0.0:
                raise JobTimeoutError(f"job timed out after {ctx.timeout_s}s")

            try:
                self.queue.update_heartbeat(job.id)
            except JobQueueError as e:
                self.log.warning("heartbeat failed", error=str(e))

    def _wait_for_straggler(self, future: Future) -> None:
        """Hold this worker until a timed-out processor call actually returns."""
        if not future.done():
            self.log.warning("processor still running after timeout; worker paused")
        while not future.done() and not self._stop_event.is_set():
            futures_wait([future], timeout=self.queue.poll_interval_s)

    def _resolve_success(
        self, job: Job, worker_id: str, output: Any, started: float
    ) -> JobResult:
        duration = time.monotonic() - started
        if output is not None and not isinstance(output, dict):
            output = {"value": output}

        try:
            self.queue.complete_job(job.id, output, worker_id=worker_id)
        except InvalidJobState as e:
            # Claim was reclaimed (visibility timeout) while the processor ran
            self.log.warning("completion rejected, claim lost", error=str(e))
            self._count(processed=1)
            return JobResult(
                job_id=job.id,
                status=JobStatus.PROCESSING,
                error_message=str(e),
                duration_s=duration,
                result=output,
            )

        self._count(processed=1, succeeded=1)
        self.log.info("job completed", duration_s=round(duration, 3))
        return JobResult(
            job_id=job.id, status=JobStatus.COMPLETED, duration_s=duration, result=output
        )

    def _resolve_failure(
        self, job: Job, worker_id: str, reason: str, retry: bool, started: float
    ) -> JobResult:
        duration = time.monotonic() - started

        try:
            updated = self.queue.fail_job(job.id, reason, retry=retry, worker_id=worker_id)
        except InvalidJobState as e:
            self.log.warning("failure rejected, claim lost", error=str(e))
            self._count(processed=1)
            return JobResult(
                job_id=job.id,
                status=JobStatus.PROCESSING,
                error_message=reason,
                duration_s=duration,
            )

        status = JobStatus(updated.status)
        if status is JobStatus.PENDING:
            self._count(processed=1, retried=1)
            self.log.warning(
                "job failed, will retry",
                error=reason[:200],
                attempt=updated.attempts,
                max_attempts=updated.max_attempts,
                available_at=updated.available_at.isoformat(),
            )
        else:
            self._count(processed=1, failed=1)
            self.log.error("job failed permanently", error=reason[:200], attempts=updated.attempts)

        return JobResult(
            job_id=job.id, status=status, error_message=reason, duration_s=duration
        )
