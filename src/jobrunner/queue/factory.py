"""Build queue backends from configuration."""

from typing import Optional

from ..models import BackendConfig, QueueConfig
from .backends import QueueBackend
from .retry import RetryPolicy


def create_queue_backend(
    backend_config: BackendConfig,
    queue_config: Optional[QueueConfig] = None,
    queue_name: str = "default",
) -> QueueBackend:
    """Create the configured backend for one named queue.

    Raises:
        QueueUnavailable: If the store cannot be opened
    """
    queue_config = queue_config or QueueConfig()
    common = dict(
        queue_name=queue_name,
        default_max_attempts=queue_config.default_max_attempts,
        retry_policy=RetryPolicy(
            base_delay_s=queue_config.retry_base_delay_s,
            max_delay_s=queue_config.retry_max_delay_s,
        ),
        visibility_timeout_s=queue_config.visibility_timeout_s,
        poll_interval_s=queue_config.poll_interval_s,
    )

    if backend_config.type == "redis":
        from .redis_backend import RedisQueue

        return RedisQueue.from_url(
            backend_config.redis.url,
            socket_timeout_s=backend_config.redis.socket_timeout_s,
            key_prefix=backend_config.redis.key_prefix,
            **common,
        )

    from .sqlite_backend import SQLiteQueue

    return SQLiteQueue(
        backend_config.sqlite.path,
        busy_timeout_s=backend_config.sqlite.busy_timeout_s,
        **common,
    )
