"""Retry and time-budget controls for recognition work."""

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from invoice_core.errors import TransientEngineError
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Deadline:
    """A fixed point in time shared by every unit of one document.

    Args:
        budget_seconds: Seconds from now until the deadline.
        clock: Monotonic time source.
    """

    def __init__(
        self, budget_seconds: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._clock = clock
        self.budget_seconds = budget_seconds
        self.expires_at = clock() + budget_seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.expires_at


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientEngineError)


@dataclass
class RetryPolicy:
    """Bounded retries with a fixed backoff schedule.

    Attributes:
        max_attempts: Total attempts including the first.
        backoff: Seconds to wait before each retry; the last value repeats.
        retryable: Decides whether an exception is worth retrying.
        sleep: Sleep function, injectable for tests.
    """

    max_attempts: int = 3
    backoff: Sequence[float] = (0.25, 0.5, 1.0)
    retryable: Callable[[BaseException], bool] = is_transient
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay(self, retry_number: int) -> float:
        if not self.backoff:
            return 0.0
        return self.backoff[min(retry_number, len(self.backoff) - 1)]

    def call(self, fn: Callable[[], T], deadline: Deadline | None = None) -> T:
        """Call ``fn`` until it succeeds or retries are exhausted.

        Args:
            fn: Zero-argument callable to run.
            deadline: Stops retrying once the remaining budget cannot
                cover the next backoff.

        Returns:
            Whatever ``fn`` returns.

        Raises:
            Exception: The last error raised by ``fn``.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.retryable(exc):
                    raise
                wait = self.delay(attempt - 1)
                if deadline is not None and deadline.remaining() <= wait:
                    raise
                logger.warning(
                    "Attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    exc,
                    wait,
                )
                self.sleep(wait)
