"""Per-job execution context handed to processors."""

import threading
import time
from typing import Optional

from .errors import JobTimeoutError


class JobContext:
    """Deadline and cancellation signal for one processing attempt.

    Processors should poll ``cancelled`` (or use ``wait``) in long loops so a
    timed-out or shutting-down job returns promptly. Threads cannot be killed,
    so a processor that ignores the context keeps its worker busy until it
    returns on its own.
    """

    def __init__(
        self,
        worker_id: str,
        timeout_s: Optional[float] = None,
        shutdown: Optional[threading.Event] = None,
    ):
        self.worker_id = worker_id
        self.timeout_s = timeout_s
        self.deadline = time.monotonic() + timeout_s if timeout_s else None
        self._cancel = threading.Event()
        self._shutdown = shutdown or threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (None = no deadline)."""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def cancel(self) -> None:
        self._cancel.set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True early if the job was cancelled."""
        return self._cancel.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobTimeoutError(f"job cancelled on worker {self.worker_id}")
