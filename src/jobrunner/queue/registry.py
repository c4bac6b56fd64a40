"""Processor registry: maps job types to the code that executes them."""

import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .errors import DuplicateProcessorError, ProcessorNotFound, RegistryFrozen
from .models import Job


class JobProcessor(ABC):
    """Executes jobs for one or more job types.

    ``timeout_s`` overrides the pool's per-job timeout for this processor
    (e.g. video work gets longer than a translation call).
    """

    timeout_s: Optional[float] = None

    @abstractmethod
    def get_job_types(self) -> List[str]:
        """Job types this processor handles."""

    @abstractmethod
    def process_job(self, ctx, job: Job) -> Optional[Dict[str, Any]]:
        """Run one job.

        Args:
            ctx: JobContext with the deadline and cancellation signal
            job: The claimed job (attempts already counts this run)

        Returns:
            Optional result dict stored with the completed job

        Raises:
            PermanentJobError: Dead-letter without further retries
            Exception: Any other error counts as a retryable failure
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}(job_types={self.get_job_types()!r})"


class FunctionProcessor(JobProcessor):
    """Adapts a plain ``func(ctx, job)`` callable to JobProcessor."""

    def __init__(
        self,
        job_types: List[str],
        func: Callable[..., Optional[Dict[str, Any]]],
        timeout_s: Optional[float] = None,
    ):
        if not job_types or not all(job_types):
            raise ValueError("job_types must be a non-empty list of non-empty strings")
        self.job_types = list(job_types)
        self.func = func
        self.timeout_s = timeout_s

    def get_job_types(self) -> List[str]:
        return list(self.job_types)

    def process_job(self, ctx, job: Job) -> Optional[Dict[str, Any]]:
        return self.func(ctx, job)

    def __call__(self, ctx, job: Job) -> Optional[Dict[str, Any]]:
        return self.func(ctx, job)

    def __repr__(self) -> str:
        name = getattr(self.func, "__qualname__", repr(self.func))
        return f"FunctionProcessor(job_types={self.job_types!r}, func={name})"


def job_processor(*job_types: str, timeout_s: Optional[float] = None):
    """Decorator turning ``func(ctx, job)`` into a FunctionProcessor.

    Example:
        @job_processor("transcode", "thumbnail", timeout_s=1800)
        def handle_video(ctx, job):
            ...

        registry.register(handle_video)
    """

    def wrap(func):
        return FunctionProcessor(list(job_types), func, timeout_s=timeout_s)

    return wrap


class ProcessorRegistry:
    """Thread-safe job type -> processor map.

    Frozen when a pool starts so lookups on the hot path never race with
    registration.
    """

    def __init__(self):
        self._processors: Dict[str, JobProcessor] = {}
        self._lock = threading.Lock()
        self._frozen = False

    def register(self, processor: JobProcessor, replace: bool = False) -> None:
        """Map every type the processor declares to it.

        Raises:
            RegistryFrozen: The owning pool already started
            DuplicateProcessorError: A type belongs to another processor
                and ``replace`` is False
        """
        job_types = processor.get_job_types()
        if not job_types:
            raise ValueError(f"{processor!r} declares no job types")

        with self._lock:
            if self._frozen:
                raise RegistryFrozen(f"cannot register {processor!r}: registry is frozen")

            if not replace:
                for job_type in job_types:
                    current = self._processors.get(job_type)
                    if current is not None and current is not processor:
                        raise DuplicateProcessorError(
                            f"job type {job_type!r} already handled by {current!r}"
                        )

            for job_type in job_types:
                self._processors[job_type] = processor

    def lookup(self, job_type: str) -> Optional[JobProcessor]:
        with self._lock:
            return self._processors.get(job_type)

    def get(self, job_type: str) -> JobProcessor:
        processor = self.lookup(job_type)
        if processor is None:
            raise ProcessorNotFound(job_type)
        return processor

    def job_types(self) -> List[str]:
        with self._lock:
            return sorted(self._processors)

    def processors(self) -> List[JobProcessor]:
        """Distinct registered processors, in registration order."""
        with self._lock:
            seen: List[JobProcessor] = []
            for processor in self._processors.values():
                if not any(processor is p for p in seen):
                    seen.append(processor)
            return seen

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def __len__(self) -> int:
        return len(self.processors())

    def __contains__(self, job_type: str) -> bool:
        with self._lock:
            return job_type in self._processors
