"""Redis implementation of QueueBackend.

Key layout for a queue named ``<q>`` under prefix ``<p>``:

    <p>:<q>:jobs                 hash   job id -> job JSON
    <p>:<q>:ready                zset   claimable jobs (score orders the claim)
    <p>:<q>:delayed              zset   pending jobs waiting for available_at
    <p>:<q>:processing           zset   claimed jobs scored by last heartbeat
    <p>:<q>:finished             zset   terminal jobs scored by completed_at
    <p>:<q>:transitions:<id>     list   state transition JSON, oldest first
    <p>:job_owner                hash   job id -> queue name (shared by all queues)

Every state change runs as an optimistic WATCH/MULTI transaction on the jobs
hash, so a job is always in exactly one index and two workers can never claim
the same id. Lua scripting is deliberately not used.
"""

import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

import redis
from redis.exceptions import RedisError

from .backends import QueueBackend
from .errors import InvalidJobState, JobNotFound, QueueUnavailable
from .models import Job, JobStatus, QueueStats, StateTransition, utcnow

# Priority dominates the ready score; epoch milliseconds stay below 1e13
PRIORITY_WEIGHT = 1e13


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisQueue(QueueBackend):
    """Redis-based queue shared by any number of worker processes/hosts.

    Blocking dequeue polls with ``poll_interval_s`` (inherited), since claims
    need the priority order of a sorted set rather than a FIFO list.
    """

    def __init__(
        self,
        client: redis.Redis,
        queue_name: str = "default",
        key_prefix: str = "jobrunner",
        **kwargs,
    ):
        super().__init__(queue_name=queue_name, **kwargs)
        self.client = client
        self.key_prefix = key_prefix
        self._owns_client = False

        base = f"{key_prefix}:{queue_name}"
        self.jobs_key = f"{base}:jobs"
        self.ready_key = f"{base}:ready"
        self.delayed_key = f"{base}:delayed"
        self.processing_key = f"{base}:processing"
        self.finished_key = f"{base}:finished"
        self.owner_key = f"{key_prefix}:job_owner"
        self._index_keys = (
            self.ready_key,
            self.delayed_key,
            self.processing_key,
            self.finished_key,
        )

    @classmethod
    def from_url(
        cls,
        url: str,
        queue_name: str = "default",
        socket_timeout_s: Optional[float] = 5.0,
        **kwargs,
    ) -> "RedisQueue":
        """Connect to ``redis://host:port/db`` and own the client."""
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout_s,
            socket_connect_timeout=socket_timeout_s,
        )
        queue = cls(client, queue_name=queue_name, **kwargs)
        queue._owns_client = True
        return queue

    def transitions_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:{self.queue_name}:transitions:{job_id}"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _store_errors(self) -> Iterator[None]:
        try:
            yield
        except RedisError as e:
            raise QueueUnavailable(f"redis error on queue {self.queue_name}: {e}") from e

    def _transaction(self, func, *watch_keys):
        """Run ``func(pipe)`` under WATCH, retrying on concurrent modification.

        ``func`` performs its reads first, then calls ``pipe.multi()`` and
        queues its writes. Its return value is passed through.
        """
        with self._store_errors():
            return self.client.transaction(
                func, self.jobs_key, *watch_keys, value_from_callable=True
            )

    @staticmethod
    def _decode(raw: Any) -> Job:
        return Job.model_validate_json(_text(raw))

    def _load(self, pipe, job_id: str) -> Job:
        raw = pipe.hget(self.jobs_key, job_id)
        if raw is None:
            raise JobNotFound(job_id)
        return self._decode(raw)

    def _load_many(self, pipe, job_ids: List[str]) -> List[Job]:
        if not job_ids:
            return []
        return [self._decode(raw) for raw in pipe.hmget(self.jobs_key, job_ids) if raw]

    def _ready_score(self, job: Job) -> float:
        return -job.priority * PRIORITY_WEIGHT + _ms(job.available_at)

    def _save(self, pipe, job: Job, now: datetime) -> None:
        """Queue the write of ``job`` and move it to the index matching its state."""
        pipe.hset(self.jobs_key, job.id, job.model_dump_json())
        for key in self._index_keys:
            pipe.zrem(key, job.id)

        status = JobStatus(job.status)
        if status is JobStatus.PENDING:
            if job.available_at > now:
                pipe.zadd(self.delayed_key, {job.id: _ms(job.available_at)})
            else:
                pipe.zadd(self.ready_key, {job.id: self._ready_score(job)})
        elif status is JobStatus.PROCESSING:
            pipe.zadd(self.processing_key, {job.id: _ms(job.last_heartbeat or now)})
        else:
            pipe.zadd(self.finished_key, {job.id: _ms(job.completed_at or now)})

    def _log_transition(self, pipe, transition: StateTransition) -> None:
        pipe.rpush(self.transitions_key(transition.job_id), transition.model_dump_json())

    # ------------------------------------------------------------------
    # QueueBackend
    # ------------------------------------------------------------------

    def enqueue(self, job: Job) -> Job:
        def add(pipe) -> Job:
            raw = pipe.hget(self.jobs_key, job.id)
            owner = _text(pipe.hget(self.owner_key, job.id))
            if raw is None and owner not in (None, self.queue_name):
                raise InvalidJobState(f"job id {job.id} already belongs to another queue")

            pipe.multi()
            if raw is not None:
                return self._decode(raw)

            now = utcnow()
            stored = self._prepare_new(job, now)
            pipe.hset(self.owner_key, job.id, self.queue_name)
            self._save(pipe, stored, now)
            self._log_transition(pipe, self._transition(stored, None))
            return stored

        return self._transaction(add, self.owner_key)

    def dequeue(self, worker_id: Optional[str] = None) -> Optional[Job]:
        self._promote_and_reclaim()

        def claim(pipe) -> Optional[Job]:
            candidates = pipe.zrange(self.ready_key, 0, 0)
            if not candidates:
                pipe.multi()
                return None

            job_id = _text(candidates[0])
            raw = pipe.hget(self.jobs_key, job_id)
            pipe.multi()
            if raw is None:
                # Index entry without a job body; drop it and let the next poll claim
                pipe.zrem(self.ready_key, job_id)
                return None

            now = utcnow()
            job = self._decode(raw)
            claimed = self._claimed(job, worker_id, now)
            self._save(pipe, claimed, now)
            self._log_transition(pipe, self._transition(claimed, job.status, worker_id))
            return claimed

        return self._transaction(claim, self.ready_key)

    def _promote_and_reclaim(self) -> int:
        """Move due delayed jobs to ready and reclaim stale claims.

        Returns:
            Count of reclaimed processing jobs
        """

        def sweep(pipe) -> int:
            now = utcnow()
            cutoff = now - timedelta(seconds=self.visibility_timeout_s)
            due = [_text(i) for i in pipe.zrangebyscore(self.delayed_key, "-inf", _ms(now))]
            stale = [
                _text(i)
                for i in pipe.zrangebyscore(self.processing_key, "-inf", f"({_ms(cutoff)}")
            ]

            due_jobs = self._load_many(pipe, due)
            stale_jobs = self._load_many(pipe, stale)
            pipe.multi()

            for job in due_jobs:
                self._save(pipe, job, now)

            for job in stale_jobs:
                reclaimed = self._reclaimed(job, now)
                self._save(pipe, reclaimed, now)
                self._log_transition(
                    pipe,
                    self._transition(
                        reclaimed, job.status, job.worker_id, error=reclaimed.last_error
                    ),
                )

            return len(stale_jobs)

        return self._transaction(sweep, self.delayed_key, self.processing_key)

    def complete_job(
        self, job_id: str, result: Optional[Dict[str, Any]] = None, worker_id: Optional[str] = None
    ) -> Job:
        def complete(pipe) -> Job:
            job = self._load(pipe, job_id)
            now = utcnow()
            completed = self._completed(job, result, worker_id, now)
            pipe.multi()
            if completed is None:
                return job

            self._save(pipe, completed, now)
            self._log_transition(pipe, self._transition(completed, job.status, worker_id))
            return completed

        return self._transaction(complete)

    def fail_job(
        self, job_id: str, reason: str, retry: bool = True, worker_id: Optional[str] = None
    ) -> Job:
        def fail(pipe) -> Job:
            job = self._load(pipe, job_id)
            now = utcnow()
            failed = self._failed(job, reason, retry, worker_id, now)
            pipe.multi()

            self._save(pipe, failed, now)
            self._log_transition(
                pipe, self._transition(failed, job.status, worker_id, error=failed.last_error)
            )
            return failed

        return self._transaction(fail)

    def _all_jobs(self) -> List[Job]:
        with self._store_errors():
            values = self.client.hvals(self.jobs_key)
        return [self._decode(raw) for raw in values]

    def get_queue_stats(self) -> QueueStats:
        counts: Dict[str, int] = {}
        jobs = self._all_jobs()
        for job in jobs:
            status = JobStatus(job.status).value
            counts[status] = counts.get(status, 0) + 1

        return QueueStats(
            queue_name=self.queue_name,
            pending=counts.get(JobStatus.PENDING.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
            total=len(jobs),
        )

    def get_job(self, job_id: str) -> Job:
        with self._store_errors():
            raw = self.client.hget(self.jobs_key, job_id)
        if raw is None:
            raise JobNotFound(job_id)
        return self._decode(raw)

    def list_jobs(
        self, status: Optional[str] = None, page: int = 1, limit: int = 50
    ) -> Tuple[List[Job], int]:
        jobs = self._all_jobs()
        if status:
            wanted = JobStatus(status)
            jobs = [job for job in jobs if JobStatus(job.status) is wanted]

        jobs.sort(key=lambda job: (job.created_at, job.id))
        start = (max(page, 1) - 1) * limit
        return jobs[start : start + limit], len(jobs)

    def delete_job(self, job_id: str) -> None:
        def delete(pipe) -> None:
            job = self._load(pipe, job_id)
            if not job.is_terminal:
                raise InvalidJobState(
                    f"cannot delete job with status: {JobStatus(job.status).value}"
                )
            pipe.multi()
            pipe.hdel(self.jobs_key, job_id)
            pipe.hdel(self.owner_key, job_id)
            for key in self._index_keys:
                pipe.zrem(key, job_id)
            pipe.delete(self.transitions_key(job_id))

        self._transaction(delete)

    def cleanup_old_jobs(self, older_than_s: float) -> int:
        def cleanup(pipe) -> int:
            cutoff = utcnow() - timedelta(seconds=older_than_s)
            ids = [
                _text(i)
                for i in pipe.zrangebyscore(self.finished_key, "-inf", _ms(cutoff))
            ]
            pipe.multi()
            if not ids:
                return 0

            pipe.hdel(self.jobs_key, *ids)
            pipe.hdel(self.owner_key, *ids)
            pipe.zrem(self.finished_key, *ids)
            pipe.delete(*[self.transitions_key(job_id) for job_id in ids])
            return len(ids)

        return self._transaction(cleanup, self.finished_key)

    def update_heartbeat(self, job_id: str) -> None:
        def beat(pipe) -> None:
            raw = pipe.hget(self.jobs_key, job_id)
            pipe.multi()
            if raw is None:
                return
            job = self._decode(raw)
            if JobStatus(job.status) is not JobStatus.PROCESSING:
                return

            now = utcnow()
            beaten = job.model_copy(update={"last_heartbeat": now})
            pipe.hset(self.jobs_key, job_id, beaten.model_dump_json())
            pipe.zadd(self.processing_key, {job_id: _ms(now)}, xx=True)

        self._transaction(beat)

    def requeue_stale(self) -> int:
        return self._promote_and_reclaim()

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        with self._store_errors():
            entries = self.client.lrange(self.transitions_key(job_id), 0, -1)
        return [StateTransition.model_validate(json.loads(_text(entry))) for entry in entries]

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
