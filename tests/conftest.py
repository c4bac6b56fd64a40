import time

import fakeredis
import pytest
import structlog

from jobrunner.models import PoolConfig
from jobrunner.queue import RedisQueue, RetryPolicy, SQLiteQueue, WorkerPool


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo any structlog configuration a test (e.g. the CLI) installed."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def temp_db(tmp_path):
    """Path to a fresh SQLite database file."""
    return str(tmp_path / "test_queue.db")


@pytest.fixture
def sqlite_queue(temp_db):
    """SQLiteQueue with immediate retries and fast polling."""
    queue = SQLiteQueue(
        temp_db,
        queue_name="test",
        retry_policy=RetryPolicy(base_delay_s=0),
        poll_interval_s=0.01,
    )
    yield queue
    queue.close()


@pytest.fixture
def redis_client():
    """Isolated in-memory Redis server."""
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    client.close()


@pytest.fixture
def redis_queue(redis_client):
    """RedisQueue with immediate retries and fast polling."""
    return RedisQueue(
        redis_client,
        queue_name="test",
        retry_policy=RetryPolicy(base_delay_s=0),
        poll_interval_s=0.01,
    )


@pytest.fixture(params=["sqlite", "redis"])
def queue(request):
    """Run the test against every backend."""
    return request.getfixturevalue(f"{request.param}_queue")


@pytest.fixture
def fast_pool_config():
    """Pool timings scaled down for tests."""
    return PoolConfig(
        workers=3,
        dequeue_timeout_s=0.2,
        job_timeout_s=5.0,
        heartbeat_interval_s=0.05,
        monitor_interval_s=0.1,
        error_backoff_s=0.05,
        shutdown_timeout_s=5.0,
    )


@pytest.fixture
def make_pool(fast_pool_config):
    """Factory for pools that are always stopped at teardown."""
    pools = []

    def factory(queue, **kwargs):
        kwargs.setdefault("config", fast_pool_config)
        pool = WorkerPool(queue, **kwargs)
        pools.append(pool)
        return pool

    yield factory

    for pool in pools:
        if pool.is_running:
            pool.stop(timeout=5.0)


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout expires."""

    def waiter(predicate, timeout=10.0, interval=0.02):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return waiter


@pytest.fixture(params=["sqlite", "redis"])
def queue_pair(request, temp_db, redis_client):
    """Two named queues sharing one store."""
    if request.param == "sqlite":
        first = SQLiteQueue(temp_db, queue_name="a", poll_interval_s=0.01)
        second = SQLiteQueue(temp_db, queue_name="b", poll_interval_s=0.01)
    else:
        first = RedisQueue(redis_client, queue_name="a", poll_interval_s=0.01)
        second = RedisQueue(redis_client, queue_name="b", poll_interval_s=0.01)
    yield first, second
    first.close()
    second.close()
