"""Owner of several named queues and their worker pools.

Each named queue from the configuration (translations, video_processing,
agent_tasks, general by default) gets its own durable queue and its own
fixed-size pool. The manager is an explicit object; nothing here is global.
"""

import importlib
import inspect
import time
from typing import Any, Callable, Dict, List, Optional

from .logs import get_logger
from .models import JobRunnerConfig
from .queue.backends import QueueBackend
from .queue.errors import JobNotFound, JobQueueError, QueueNotFound
from .queue.factory import create_queue_backend
from .queue.models import Job, PoolStats, QueueStats
from .queue.registry import JobProcessor
from .queue.worker import WorkerPool

logger = get_logger(__name__)


def import_processor(path: str) -> JobProcessor:
    """Resolve 'package.module:attr' to a processor instance.

    ``attr`` may be a JobProcessor instance (including ``@job_processor``
    functions) or a JobProcessor subclass with a no-argument constructor.
    """
    module_name, _, attr = path.partition(":")
    module = importlib.import_module(module_name)
    target = getattr(module, attr)

    if inspect.isclass(target) and issubclass(target, JobProcessor):
        target = target()
    if not isinstance(target, JobProcessor):
        raise TypeError(f"{path} is not a JobProcessor")
    return target


class QueueManager:
    """Build, run and inspect all configured queues.

    Example:
        manager = QueueManager(resolve_config())
        manager.load_processors()
        with manager:
            manager.enqueue("general", Job(type="noop"))
    """

    def __init__(
        self,
        config: Optional[JobRunnerConfig] = None,
        queue_factory: Optional[Callable[[str], QueueBackend]] = None,
    ):
        """
        Args:
            config: Resolved configuration (defaults if omitted)
            queue_factory: Builds the backend for a queue name; defaults to the
                configured SQLite/Redis backend
        """
        self.config = config or JobRunnerConfig()
        factory = queue_factory or (
            lambda name: create_queue_backend(self.config.backend, self.config.queue, name)
        )

        self._queues: Dict[str, QueueBackend] = {}
        self._pools: Dict[str, WorkerPool] = {}
        for queue_cfg in self.config.queues:
            queue = factory(queue_cfg.name)
            pool_config = self.config.pool.model_copy(
                update={
                    "workers": queue_cfg.workers,
                    "job_timeout_s": queue_cfg.job_timeout_s or self.config.pool.job_timeout_s,
                }
            )
            self._queues[queue_cfg.name] = queue
            self._pools[queue_cfg.name] = WorkerPool(
                queue, config=pool_config, name=queue_cfg.name
            )

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.close()

    @property
    def queue_names(self) -> List[str]:
        return list(self._queues)

    def get_queue(self, name: str) -> QueueBackend:
        if name not in self._queues:
            raise QueueNotFound(name)
        return self._queues[name]

    def get_pool(self, name: str) -> WorkerPool:
        if name not in self._pools:
            raise QueueNotFound(name)
        return self._pools[name]

    # ------------------------------------------------------------------
    # Processors & lifecycle
    # ------------------------------------------------------------------

    def register_processor(
        self, queue_name: str, processor: JobProcessor, replace: bool = False
    ) -> None:
        self.get_pool(queue_name).register_processor(processor, replace=replace)

    def load_processors(self) -> int:
        """Import and register the processors listed for each queue in config.

        Returns:
            Number of processors registered
        """
        count = 0
        for queue_cfg in self.config.queues:
            for path in queue_cfg.processors:
                self.register_processor(queue_cfg.name, import_processor(path))
                count += 1
        return count

    def start(self) -> None:
        """Recover stale claims left by crashed workers, then start every pool."""
        for name, pool in self._pools.items():
            try:
                reclaimed = pool.queue.requeue_stale()
            except JobQueueError as e:
                logger.warning("stale job recovery failed", queue=name, error=str(e))
            else:
                if reclaimed:
                    logger.info("reclaimed stale jobs", queue=name, count=reclaimed)
            pool.start()

        logger.info("queue manager started", queues=self.queue_names)

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop all running pools, sharing one overall timeout.

        Returns:
            True if every worker of every pool exited in time
        """
        timeout = self.config.pool.shutdown_timeout_s if timeout is None else timeout
        deadline = time.monotonic() + timeout
        clean = True

        running = [pool for pool in self._pools.values() if pool.is_running]
        # Signal everyone first so pools drain in parallel
        for pool in running:
            pool.request_stop()
        for pool in running:
            clean = pool.stop(max(deadline - time.monotonic(), 0.0)) and clean

        logger.info("queue manager stopped", clean=clean)
        return clean

    def close(self) -> None:
        if any(pool.is_running for pool in self._pools.values()):
            self.stop()
        for queue in self._queues.values():
            queue.close()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def enqueue(self, queue_name: str, job: Job) -> Job:
        return self.get_queue(queue_name).enqueue(job)

    def find_job(self, job_id: str) -> Job:
        """Search every queue for a job id (raises JobNotFound)."""
        for queue in self._queues.values():
            try:
                return queue.get_job(job_id)
            except JobNotFound:
                continue
        raise JobNotFound(job_id)

    def retry_job(self, job_id: str) -> Job:
        job = self.find_job(job_id)
        return self.get_queue(job.queue).retry_job(job_id)

    def delete_job(self, job_id: str) -> None:
        job = self.find_job(job_id)
        self.get_queue(job.queue).delete_job(job_id)

    def cleanup_old_jobs(self, hours: float, queue_name: Optional[str] = None) -> int:
        """Drop terminal jobs older than ``hours`` from one queue or all of them.

        When cleaning all queues, a failing queue is logged and skipped.
        """
        older_than_s = hours * 3600
        if queue_name:
            return self.get_queue(queue_name).cleanup_old_jobs(older_than_s)

        total = 0
        for name, queue in self._queues.items():
            try:
                total += queue.cleanup_old_jobs(older_than_s)
            except JobQueueError as e:
                logger.error("cleanup failed", queue=name, error=str(e))
        return total

    # ------------------------------------------------------------------
    # Stats & health
    # ------------------------------------------------------------------

    def get_queue_stats(self) -> Dict[str, QueueStats]:
        return {name: queue.get_queue_stats() for name, queue in self._queues.items()}

    def get_stats(self) -> Dict[str, PoolStats]:
        return {name: pool.get_stats() for name, pool in self._pools.items()}

    def get_health_status(self) -> Dict[str, Any]:
        """Health summary for every queue.

        A queue is unhealthy when it has more failed than completed jobs, or
        when its store is unreachable; any unhealthy queue makes the overall
        status 'degraded'.
        """
        overall_healthy = True
        queues: Dict[str, Any] = {}

        for name, pool in self._pools.items():
            try:
                stats = pool.queue.get_queue_stats()
            except JobQueueError as e:
                logger.error("stats unavailable", queue=name, error=str(e))
                overall_healthy = False
                queues[name] = {"status": "unavailable", "error": str(e)}
                continue

            healthy = stats.failed <= stats.completed
            overall_healthy = overall_healthy and healthy
            queues[name] = {
                "status": "healthy" if healthy else "unhealthy",
                "worker_count": pool.n_workers,
                "is_running": pool.is_running,
                "pending_jobs": stats.pending,
                "processing_jobs": stats.processing,
                "completed_jobs": stats.completed,
                "failed_jobs": stats.failed,
            }

        return {
            "status": "healthy" if overall_healthy else "degraded",
            "timestamp": int(time.time()),
            "queues": queues,
        }
