"""Retry backoff policy applied by queue backends on ``fail_job``."""

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(2 ** attempts * base_delay_s, max_delay_s)``.

    A base delay of 0 requeues failed jobs immediately.
    """

    base_delay_s: float = 5.0
    max_delay_s: float = 300.0

    def __post_init__(self):
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("retry delays must be non-negative")

    def delay_s(self, attempts: int) -> float:
        if self.base_delay_s == 0:
            return 0.0
        # Cap the exponent so huge attempt counts don't overflow the float
        exponent = min(max(attempts, 0), 32)
        return min((2 ** exponent) * self.base_delay_s, self.max_delay_s)

    def delay(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.delay_s(attempts))
