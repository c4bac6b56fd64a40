"""Worker pool tests.

Tests cover:
- Success, retry and dead-letter paths end to end
- Missing-processor fast-fail and permanent errors
- Per-job timeout and heartbeats
- Lifecycle (start/stop/context manager) and stats
- Concurrent producers against a fixed-size pool
"""

import threading
import time
from collections import Counter

import pytest

from jobrunner.queue import (
    FunctionProcessor,
    Job,
    JobStatus,
    PermanentJobError,
    PoolState,
    PoolStateError,
    QueueUnavailable,
    RegistryFrozen,
    RetryPolicy,
    SQLiteQueue,
    job_processor,
)


def is_status(queue, job_id, status):
    return lambda: queue.get_job(job_id).status == status


class TestScenarios:
    def test_echo_always_failing_is_dead_lettered(self, queue, make_pool, wait_until):
        """Always-failing processor: attempts == max_attempts, then failed."""
        calls = Counter()

        @job_processor("echo")
        def echo(ctx, job):
            calls[job.id] += 1
            raise RuntimeError(f"echo failed on attempt {job.attempts}")

        pool = make_pool(queue)
        pool.register_processor(echo)
        job = pool.enqueue(Job(type="echo", max_attempts=3))

        with pool:
            assert wait_until(is_status(queue, job.id, JobStatus.FAILED))

        final = queue.get_job(job.id)
        assert final.attempts == 3
        assert calls[job.id] == 3
        assert "RuntimeError: echo failed on attempt 3" in final.last_error

    def test_noop_completes(self, queue, make_pool, wait_until):
        pool = make_pool(queue)
        pool.register_processor(FunctionProcessor(["noop"], lambda ctx, job: {"done": True}))
        before = queue.get_queue_stats().completed

        with pool:
            job = pool.enqueue(Job(type="noop"))
            assert wait_until(is_status(queue, job.id, JobStatus.COMPLETED))

        assert queue.get_job(job.id).result == {"done": True}
        assert queue.get_queue_stats().completed == before + 1

    def test_missing_processor_fails_fast(self, queue, make_pool, wait_until):
        """No retry budget is spent on a job nobody can run."""
        pool = make_pool(queue)
        pool.register_processor(FunctionProcessor(["noop"], lambda ctx, job: None))

        with pool:
            job = pool.enqueue(Job(type="unregistered", max_attempts=5))
            assert wait_until(is_status(queue, job.id, JobStatus.FAILED))

        final = queue.get_job(job.id)
        assert final.attempts == 1
        assert "no processor registered for job type: unregistered" in final.last_error

    def test_permanent_error_skips_retries(self, queue, make_pool, wait_until):
        @job_processor("validate")
        def validate(ctx, job):
            raise PermanentJobError("payload is missing 'url'")

        pool = make_pool(queue)
        pool.register_processor(validate)

        with pool:
            job = pool.enqueue(Job(type="validate", max_attempts=5))
            assert wait_until(is_status(queue, job.id, JobStatus.FAILED))

        final = queue.get_job(job.id)
        assert final.attempts == 1
        assert "payload is missing" in final.last_error

    def test_transient_failure_then_success(self, queue, make_pool, wait_until):
        @job_processor("flaky")
        def flaky(ctx, job):
            if job.attempts < 2:
                raise ConnectionError("upstream reset")
            return {"attempt": job.attempts}

        pool = make_pool(queue)
        pool.register_processor(flaky)

        with pool:
            job = pool.enqueue(Job(type="flaky"))
            assert wait_until(is_status(queue, job.id, JobStatus.COMPLETED))
            assert wait_until(lambda: pool.get_stats().succeeded == 1)
            stats = pool.get_stats()

        final = queue.get_job(job.id)
        assert final.attempts == 2
        assert final.result == {"attempt": 2}
        assert final.last_error is None
        assert stats.retried == 1

    def test_concurrent_producers(self, queue, make_pool, wait_until):
        """100 jobs from 10 producers on 5 workers; each claim runs the processor once."""
        calls = Counter()
        lock = threading.Lock()

        @job_processor("work")
        def work(ctx, job):
            with lock:
                calls[job.id] += 1
            if job.payload["n"] % 7 == 0 and job.attempts == 1:
                raise RuntimeError("first attempt fails")
            if job.payload["n"] % 25 == 0:
                raise PermanentJobError("bad item")
            return None

        pool = make_pool(queue, n_workers=5)
        pool.register_processor(work)
        ids = []
        ids_lock = threading.Lock()

        def producer(p):
            for i in range(10):
                job = pool.enqueue(Job(type="work", payload={"n": p * 10 + i}))
                with ids_lock:
                    ids.append(job.id)

        with pool:
            producers = [threading.Thread(target=producer, args=(p,)) for p in range(10)]
            for t in producers:
                t.start()
            for t in producers:
                t.join()

            def all_done():
                stats = queue.get_queue_stats()
                return stats.completed + stats.failed == 100

            assert wait_until(all_done, timeout=30.0)

        assert len(set(ids)) == 100
        for job_id in ids:
            job = queue.get_job(job_id)
            assert calls[job_id] == job.attempts
            assert job.status in (JobStatus.COMPLETED, JobStatus.FAILED)
        assert queue.get_queue_stats().failed == 4


class TestTimeouts:
    def test_job_timeout_cancels_and_fails(self, queue, make_pool, wait_until):
        observed = []

        @job_processor("slow", timeout_s=0.2)
        def slow(ctx, job):
            observed.append(ctx.wait(10))
            return None

        pool = make_pool(queue)
        pool.register_processor(slow)

        with pool:
            job = pool.enqueue(Job(type="slow", max_attempts=1))
            assert wait_until(is_status(queue, job.id, JobStatus.FAILED))
            assert wait_until(lambda: observed == [True])

        assert "timed out" in queue.get_job(job.id).last_error

    def test_processor_timeout_error_is_ordinary_failure(self, queue, make_pool, wait_until):
        """A TimeoutError raised by the processor itself is reported as such."""

        @job_processor("remote")
        def remote(ctx, job):
            raise TimeoutError("upstream did not answer")

        pool = make_pool(queue)
        pool.register_processor(remote)

        with pool:
            job = pool.enqueue(Job(type="remote", max_attempts=1))
            assert wait_until(is_status(queue, job.id, JobStatus.FAILED))

        assert "TimeoutError: upstream did not answer" in queue.get_job(job.id).last_error

    def test_heartbeats_keep_long_job_claimed(self, temp_db, make_pool, wait_until):
        queue = SQLiteQueue(
            temp_db,
            queue_name="hb",
            visibility_timeout_s=0.3,
            retry_policy=RetryPolicy(base_delay_s=0),
            poll_interval_s=0.01,
        )

        @job_processor("long")
        def long_job(ctx, job):
            time.sleep(0.8)
            return None

        pool = make_pool(queue, n_workers=2)
        pool.register_processor(long_job)

        with pool:
            job = pool.enqueue(Job(type="long"))
            assert wait_until(is_status(queue, job.id, JobStatus.COMPLETED))

        assert queue.get_job(job.id).attempts == 1
        queue.close()


class TestLifecycle:
    def test_graceful_shutdown_finishes_in_flight_job(self, queue, make_pool, wait_until):
        started = threading.Event()

        @job_processor("sleepy")
        def sleepy(ctx, job):
            started.set()
            time.sleep(0.3)
            return None

        pool = make_pool(queue, n_workers=1)
        pool.register_processor(sleepy)
        pool.start()
        job = pool.enqueue(Job(type="sleepy"))
        assert started.wait(5)

        assert pool.stop(timeout=5) is True

        assert pool.state is PoolState.STOPPED
        assert queue.get_job(job.id).status == JobStatus.COMPLETED

    def test_stop_stops_claiming(self, queue, make_pool):
        pool = make_pool(queue)
        pool.register_processor(FunctionProcessor(["noop"], lambda ctx, job: None))
        pool.start()
        pool.stop(timeout=5)

        job = pool.enqueue(Job(type="noop"))
        time.sleep(0.2)

        assert queue.get_job(job.id).status == JobStatus.PENDING

    def test_start_twice_rejected(self, queue, make_pool):
        pool = make_pool(queue)
        pool.start()
        with pytest.raises(PoolStateError):
            pool.start()

    def test_stop_twice_rejected(self, queue, make_pool):
        pool = make_pool(queue)
        pool.start()
        pool.stop()
        with pytest.raises(PoolStateError):
            pool.stop()
        with pytest.raises(PoolStateError):
            pool.start()

    def test_stop_before_start(self, queue, make_pool):
        pool = make_pool(queue)
        assert pool.stop() is True
        assert pool.state is PoolState.STOPPED

    def test_register_after_start_rejected(self, queue, make_pool):
        pool = make_pool(queue)
        pool.start()
        with pytest.raises(RegistryFrozen):
            pool.register_processor(FunctionProcessor(["late"], lambda ctx, job: None))

    def test_context_manager(self, queue, make_pool):
        pool = make_pool(queue)
        with pool as running:
            assert running.is_running
        assert pool.state is PoolState.STOPPED

    def test_invalid_worker_count(self, queue, make_pool):
        with pytest.raises(ValueError):
            make_pool(queue, n_workers=-1)
        with pytest.raises(ValueError):
            make_pool(queue, n_workers=0)


class TestStats:
    def test_get_stats(self, queue, make_pool, wait_until):
        pool = make_pool(queue, n_workers=2, name="video")
        pool.register_processor(FunctionProcessor(["a", "b"], lambda ctx, job: None))
        pool.register_processor(FunctionProcessor(["c"], lambda ctx, job: None))

        stats = pool.get_stats()
        assert stats.name == "video"
        assert stats.workers == 2
        assert stats.registered_processors == 2
        assert stats.job_types == ["a", "b", "c"]
        assert stats.is_running is False

        with pool:
            job = pool.enqueue(Job(type="a"))
            assert wait_until(is_status(queue, job.id, JobStatus.COMPLETED))
            assert wait_until(lambda: pool.get_stats().succeeded == 1)
            stats = pool.get_stats()

        assert stats.is_running is True
        assert stats.processed == 1
        assert stats.queue.completed == 1

    def test_store_errors_are_survived(self, temp_db, make_pool, wait_until):
        """A worker logs queue errors, backs off and keeps going."""

        class FlakyQueue(SQLiteQueue):
            failures = 3

            def dequeue(self, worker_id=None):
                if self.failures > 0:
                    self.failures -= 1
                    raise QueueUnavailable("database is locked")
                return super().dequeue(worker_id)

        queue = FlakyQueue(temp_db, queue_name="flaky", poll_interval_s=0.01)
        pool = make_pool(queue, n_workers=1)
        pool.register_processor(FunctionProcessor(["noop"], lambda ctx, job: None))

        with pool:
            job = pool.enqueue(Job(type="noop"))
            assert wait_until(is_status(queue, job.id, JobStatus.COMPLETED))

        assert queue.failures == 0
        queue.close()
