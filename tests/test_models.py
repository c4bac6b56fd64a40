"""Tests for job models, retry policy and configuration models."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from jobrunner.models import JobRunnerConfig, NamedQueueConfig, PoolConfig, QueueConfig
from jobrunner.queue import Job, JobPriority, JobStatus, RetryPolicy
from jobrunner.queue.models import MAX_PRIORITY


class TestJob:
    def test_defaults(self):
        """Producers only need a type."""
        job = Job(type="noop")

        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.max_attempts is None
        assert job.priority == JobPriority.NORMAL
        assert job.payload == {}
        assert job.metadata == {}
        assert len(job.id) == 32
        assert job.created_at.tzinfo is not None

    def test_ids_are_unique(self):
        assert Job(type="noop").id != Job(type="noop").id

    def test_type_required(self):
        with pytest.raises(ValidationError):
            Job(type="")

    def test_negative_priority_rejected(self):
        with pytest.raises(ValidationError):
            Job(type="noop", priority=-1)

    def test_priority_capped(self):
        assert Job(type="noop", priority=MAX_PRIORITY).priority == MAX_PRIORITY
        with pytest.raises(ValidationError):
            Job(type="noop", priority=MAX_PRIORITY + 1)

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            Job(type="noop", max_attempts=0)

    def test_retries_left(self):
        job = Job(type="noop", max_attempts=3, attempts=1)
        assert job.retries_left == 2
        assert Job(type="noop", max_attempts=2, attempts=5).retries_left == 0

    def test_terminal_states(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.PROCESSING.is_terminal
        assert Job(type="noop", status=JobStatus.FAILED).is_terminal

    def test_json_roundtrip_keeps_status_enum(self):
        job = Job(type="noop", payload={"k": [1, 2]}, status=JobStatus.PROCESSING)
        restored = Job.model_validate_json(job.model_dump_json())

        assert restored.status is JobStatus.PROCESSING
        assert restored.payload == {"k": [1, 2]}
        assert restored.created_at == job.created_at

    def test_priority_levels(self):
        assert JobPriority.LOW < JobPriority.NORMAL < JobPriority.HIGH < JobPriority.CRITICAL
        assert int(JobPriority.CRITICAL) == 10


class TestRetryPolicy:
    def test_exponential_backoff(self):
        policy = RetryPolicy(base_delay_s=5.0, max_delay_s=300.0)

        assert policy.delay_s(1) == 10.0
        assert policy.delay_s(2) == 20.0
        assert policy.delay_s(3) == 40.0

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay_s=5.0, max_delay_s=300.0)
        assert policy.delay_s(10) == 300.0
        assert policy.delay_s(10_000) == 300.0

    def test_zero_base_is_immediate(self):
        policy = RetryPolicy(base_delay_s=0)
        assert policy.delay_s(5) == 0.0
        assert policy.delay(5) == timedelta(0)

    def test_negative_delays_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_s=-1)


class TestConfigModels:
    def test_defaults(self):
        config = JobRunnerConfig()

        assert config.backend.type == "sqlite"
        assert config.queue.default_max_attempts == 3
        assert config.pool.dequeue_timeout_s == 30.0
        assert config.pool.job_timeout_s == 600.0
        assert config.pool.monitor_interval_s == 30.0
        assert [q.name for q in config.queues] == [
            "translations",
            "video_processing",
            "agent_tasks",
            "general",
        ]
        assert [q.workers for q in config.queues] == [3, 2, 2, 3]

    def test_invalid_backend(self):
        with pytest.raises(ValidationError):
            JobRunnerConfig.from_dict({"backend": {"type": "postgres"}})

    def test_invalid_pool_values(self):
        with pytest.raises(ValidationError):
            PoolConfig(workers=0)
        with pytest.raises(ValidationError):
            QueueConfig(default_max_attempts=0)

    def test_duplicate_queue_names(self):
        with pytest.raises(ValidationError):
            JobRunnerConfig.from_dict({"queues": [{"name": "a"}, {"name": "a"}]})

    def test_processor_path_format(self):
        assert NamedQueueConfig(name="q", processors=["pkg.mod:handler"]).processors
        with pytest.raises(ValidationError):
            NamedQueueConfig(name="q", processors=["pkg.mod.handler"])

    def test_get_queue(self):
        config = JobRunnerConfig()
        assert config.get_queue("general").workers == 3
        with pytest.raises(KeyError):
            config.get_queue("missing")
