"""Pydantic models for configuration and validation."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SQLiteConfig(BaseModel):
    """SQLite backend settings."""

    path: str = Field(default="jobrunner.db", description="Database file (or ':memory:')")
    busy_timeout_s: float = Field(
        default=5.0, gt=0.0, description="How long SQLite waits on a locked database"
    )


class RedisConfig(BaseModel):
    """Redis backend settings."""

    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    key_prefix: str = Field(default="jobrunner", min_length=1, description="Namespace for all keys")
    socket_timeout_s: float = Field(default=5.0, gt=0.0, description="Socket/connect timeout")


class BackendConfig(BaseModel):
    """Durable store selection."""

    type: Literal["sqlite", "redis"] = Field(default="sqlite", description="Queue backend")
    sqlite: SQLiteConfig = Field(default_factory=SQLiteConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)


class QueueConfig(BaseModel):
    """Queue semantics shared by every named queue."""

    default_max_attempts: int = Field(
        default=3, ge=1, description="Retry ceiling for jobs without their own max_attempts"
    )
    retry_base_delay_s: float = Field(
        default=5.0, ge=0.0, description="Backoff base: min(2^attempts * base, max). 0 = immediate"
    )
    retry_max_delay_s: float = Field(default=300.0, ge=0.0, description="Backoff cap in seconds")
    visibility_timeout_s: float = Field(
        default=600.0,
        gt=0.0,
        description="Processing jobs without a heartbeat for this long are reclaimed",
    )
    poll_interval_s: float = Field(
        default=0.5, gt=0.0, description="Sleep between claim attempts while blocking"
    )


class PoolConfig(BaseModel):
    """Worker pool timing parameters."""

    workers: int = Field(default=3, ge=1, description="Concurrent workers per pool")
    dequeue_timeout_s: float = Field(
        default=30.0, gt=0.0, description="Blocking dequeue wait before re-checking shutdown"
    )
    job_timeout_s: float = Field(
        default=600.0, gt=0.0, description="Per-job deadline (10 min default)"
    )
    heartbeat_interval_s: float = Field(
        default=60.0, gt=0.0, description="Heartbeat period while a job runs"
    )
    monitor_interval_s: float = Field(
        default=30.0, gt=0.0, description="Period of the stats log line"
    )
    error_backoff_s: float = Field(
        default=5.0, ge=0.0, description="Worker pause after a store error"
    )
    shutdown_timeout_s: float = Field(
        default=30.0, gt=0.0, description="How long stop() waits for workers"
    )


class NamedQueueConfig(BaseModel):
    """One named queue served by its own pool."""

    name: str = Field(..., min_length=1, description="Queue name")
    workers: int = Field(default=3, ge=1, description="Workers for this queue")
    job_timeout_s: Optional[float] = Field(
        default=None, gt=0.0, description="Per-job deadline override (None = pool default)"
    )
    processors: List[str] = Field(
        default_factory=list, description="Processor import paths ('package.module:attr')"
    )

    @field_validator("processors")
    @classmethod
    def processor_paths(cls, v: List[str]) -> List[str]:
        for path in v:
            module, _, attr = path.partition(":")
            if not module or not attr:
                raise ValueError(f"processor path must be 'module:attr', got {path!r}")
        return v


def default_queues() -> List[NamedQueueConfig]:
    return [
        NamedQueueConfig(name="translations", workers=3),
        NamedQueueConfig(name="video_processing", workers=2, job_timeout_s=1800.0),
        NamedQueueConfig(name="agent_tasks", workers=2),
        NamedQueueConfig(name="general", workers=3),
    ]


class LoggingConfig(BaseModel):
    """structlog output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    format: Literal["json", "console"] = Field(default="console")


class JobRunnerConfig(BaseSettings):
    """Complete application configuration with validation.

    YAML files are passed in as init values; JOBRUNNER_* environment variables
    (nested with ``__``, e.g. JOBRUNNER_POOL__WORKERS=8) take precedence.
    """

    model_config = SettingsConfigDict(
        env_prefix="JOBRUNNER_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    backend: BackendConfig = Field(default_factory=BackendConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    queues: List[NamedQueueConfig] = Field(default_factory=default_queues)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats YAML (init kwargs); CLI is applied afterwards
        return (env_settings, init_settings)

    @field_validator("queues")
    @classmethod
    def unique_queue_names(cls, v: List[NamedQueueConfig]) -> List[NamedQueueConfig]:
        names = [q.name for q in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate queue names: {duplicates}")
        return v

    @model_validator(mode="after")
    def heartbeat_within_visibility(self) -> "JobRunnerConfig":
        # A claim not refreshed within the visibility window is reclaimed and run again
        if self.pool.heartbeat_interval_s >= self.queue.visibility_timeout_s:
            raise ValueError(
                f"pool.heartbeat_interval_s ({self.pool.heartbeat_interval_s}) must be shorter "
                f"than queue.visibility_timeout_s ({self.queue.visibility_timeout_s})"
            )
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "JobRunnerConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def get_queue(self, name: str) -> NamedQueueConfig:
        for queue in self.queues:
            if queue.name == name:
                return queue
        raise KeyError(f"unknown queue: {name}")

    def merge_cli_overrides(self, cli_args: dict) -> "JobRunnerConfig":
        """Apply CLI overrides and return new config instance."""
        backend = self.backend.model_dump()
        pool = self.pool.model_dump()
        logging_cfg = self.logging.model_dump()

        if cli_args.get("backend") is not None:
            backend["type"] = cli_args["backend"]
        if cli_args.get("db_path") is not None:
            backend["sqlite"]["path"] = cli_args["db_path"]
        if cli_args.get("redis_url") is not None:
            backend["redis"]["url"] = cli_args["redis_url"]
        if cli_args.get("workers") is not None:
            pool["workers"] = cli_args["workers"]
        if cli_args.get("job_timeout") is not None:
            pool["job_timeout_s"] = cli_args["job_timeout"]
        if cli_args.get("log_level") is not None:
            logging_cfg["level"] = cli_args["log_level"]
        if cli_args.get("log_format") is not None:
            logging_cfg["format"] = cli_args["log_format"]

        # Pool-wide overrides also win over the per-queue values
        queue_overrides = {}
        if cli_args.get("workers") is not None:
            queue_overrides["workers"] = cli_args["workers"]
        if cli_args.get("job_timeout") is not None:
            queue_overrides["job_timeout_s"] = cli_args["job_timeout"]
        queues = [NamedQueueConfig(**{**q.model_dump(), **queue_overrides}) for q in self.queues]

        # Rebuild nested models so overrides are validated
        return self.model_copy(
            update={
                "backend": BackendConfig(**backend),
                "pool": PoolConfig(**pool),
                "queues": queues,
                "logging": LoggingConfig(**logging_cfg),
            }
        )
