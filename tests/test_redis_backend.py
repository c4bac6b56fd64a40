"""Redis-specific behaviour: key layout, index bookkeeping and connection errors."""

from datetime import timedelta

import fakeredis
import pytest
import redis

from jobrunner.queue import Job, JobPriority, JobStatus, QueueUnavailable, RedisQueue
from jobrunner.queue.models import MAX_PRIORITY, utcnow


class TestKeyLayout:
    def test_keys_are_namespaced(self, redis_queue):
        assert redis_queue.jobs_key == "jobrunner:test:jobs"
        assert redis_queue.ready_key == "jobrunner:test:ready"
        assert redis_queue.transitions_key("abc") == "jobrunner:test:transitions:abc"

    def test_job_moves_between_indexes(self, redis_queue, redis_client):
        job = redis_queue.enqueue(Job(type="noop"))
        assert redis_client.hexists(redis_queue.jobs_key, job.id)
        assert redis_client.zscore(redis_queue.ready_key, job.id) is not None

        redis_queue.dequeue(worker_id="w1")
        assert redis_client.zscore(redis_queue.ready_key, job.id) is None
        assert redis_client.zscore(redis_queue.processing_key, job.id) is not None

        redis_queue.complete_job(job.id)
        assert redis_client.zscore(redis_queue.processing_key, job.id) is None
        assert redis_client.zscore(redis_queue.finished_key, job.id) is not None

    def test_delayed_jobs_wait_in_delayed_set(self, redis_queue, redis_client):
        job = redis_queue.enqueue(
            Job(type="noop", available_at=utcnow() + timedelta(seconds=60))
        )

        assert redis_client.zscore(redis_queue.delayed_key, job.id) is not None
        assert redis_queue.dequeue(worker_id="w1") is None

    def test_priority_dominates_ready_score(self, redis_queue):
        month_ago = utcnow() - timedelta(days=30)
        old_low = Job(type="t", priority=JobPriority.LOW, available_at=month_ago)
        new_high = Job(type="t", priority=JobPriority.HIGH)

        assert redis_queue._ready_score(new_high) < redis_queue._ready_score(old_low)

    def test_custom_prefix_isolates_queues(self, redis_client):
        a = RedisQueue(redis_client, queue_name="test", key_prefix="app-a")
        b = RedisQueue(redis_client, queue_name="test", key_prefix="app-b")

        a.enqueue(Job(type="noop"))

        assert b.get_queue_stats().total == 0
        assert b.dequeue(worker_id="w") is None

    def test_cleanup_removes_transition_lists(self, redis_queue, redis_client):
        job = redis_queue.enqueue(Job(type="noop"))
        redis_queue.dequeue(worker_id="w1")
        redis_queue.complete_job(job.id)

        assert redis_queue.cleanup_old_jobs(older_than_s=0) == 1
        assert not redis_client.exists(redis_queue.transitions_key(job.id))
        assert redis_client.zcard(redis_queue.finished_key) == 0
        assert not redis_client.hexists(redis_queue.owner_key, job.id)

    def test_owner_hash_tracks_job_ids(self, redis_queue, redis_client):
        job = redis_queue.enqueue(Job(type="noop"))
        assert redis_queue.owner_key == "jobrunner:job_owner"
        assert redis_client.hget(redis_queue.owner_key, job.id) == "test"

        redis_queue.dequeue(worker_id="w1")
        redis_queue.complete_job(job.id)
        redis_queue.delete_job(job.id)

        assert not redis_client.hexists(redis_queue.owner_key, job.id)

    def test_max_priority_scores_keep_millisecond_order(self, redis_queue):
        now = utcnow()
        first = Job(type="t", priority=MAX_PRIORITY, available_at=now)
        second = Job(type="t", priority=MAX_PRIORITY, available_at=now + timedelta(milliseconds=1))

        assert redis_queue._ready_score(first) < redis_queue._ready_score(second)


class TestClients:
    def test_bytes_responses_supported(self):
        """Clients without decode_responses still work."""
        client = fakeredis.FakeRedis(server=fakeredis.FakeServer())
        queue = RedisQueue(client, queue_name="raw")

        job = queue.enqueue(Job(type="noop"))
        claimed = queue.dequeue(worker_id="w1")

        assert claimed.id == job.id
        assert claimed.status == JobStatus.PROCESSING
        assert [t.to_state for t in queue.get_transitions(job.id)] == ["pending", "processing"]

    def test_connection_error_is_queue_unavailable(self):
        client = redis.Redis(host="127.0.0.1", port=1, socket_connect_timeout=0.2)
        queue = RedisQueue(client, queue_name="down")

        with pytest.raises(QueueUnavailable):
            queue.enqueue(Job(type="noop"))
        with pytest.raises(QueueUnavailable):
            queue.get_queue_stats()
