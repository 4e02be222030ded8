"""
Backoff schedules shared by the request gateway and the export job poller.

A schedule is (initial delay, growth factor, cap, optional overall timeout).
The gateway retries throttled requests on BackoffPolicy(2, 2, 32); the job
poller polls on BackoffPolicy(0.5, 1.5, 4, timeout=max_wait).
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional

Sleeper = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential delay schedule."""
    initial: float
    factor: float
    cap: float
    timeout: Optional[float] = None

    def __post_init__(self):
        if self.initial <= 0:
            raise ValueError("initial delay must be positive")
        if self.factor < 1:
            raise ValueError("growth factor must be >= 1")
        if self.cap < self.initial:
            raise ValueError("cap must be >= initial delay")

    def delay(self, attempt: int) -> float:
        """
        Delay after the given zero-based attempt.

        Args:
            attempt: 0 for the first wait, 1 for the second, ...

        Returns:
            Seconds to wait, never above the cap
        """
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        # Stop multiplying once capped to avoid float overflow on long polls.
        value = self.initial
        for _ in range(attempt):
            value *= self.factor
            if value >= self.cap:
                return self.cap
        return min(value, self.cap)

    def delays(self) -> Iterator[float]:
        """Yield the infinite delay sequence."""
        attempt = 0
        while True:
            yield self.delay(attempt)
            attempt += 1

    def deadline_reached(self, elapsed: float) -> bool:
        """True once elapsed seconds reach the overall timeout."""
        return self.timeout is not None and elapsed >= self.timeout


# Request gateway: 2s, 4s, 8s ... capped at 32s.
GATEWAY_BACKOFF = BackoffPolicy(initial=2.0, factor=2.0, cap=32.0)


def poll_backoff(max_wait_seconds: float) -> BackoffPolicy:
    """Export job polling schedule: 500ms growing by 1.5x up to 4s."""
    return BackoffPolicy(initial=0.5, factor=1.5, cap=4.0, timeout=max_wait_seconds)


def monotonic_clock() -> float:
    return time.monotonic()


default_sleep: Sleeper = asyncio.sleep
