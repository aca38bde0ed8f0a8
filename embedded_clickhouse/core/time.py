"""Deadline tracking for download, startup and shutdown phases."""

import time
from typing import Callable, Optional


class Deadline:
    """An absolute point in monotonic time an operation must finish by.

    Per-request timeouts are clamped to what is left of the phase budget.
    """

    def __init__(
        self,
        timeout: float,
        name: str = "operation",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if timeout < 0:
            raise ValueError(f"Deadline timeout must not be negative, got {timeout}")
        self.name = name
        self.timeout = timeout
        self._clock = clock
        self._started = clock()
        self.expires_at = self._started + timeout

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self.expires_at - self._clock())

    def elapsed(self) -> float:
        return self._clock() - self._started

    def is_expired(self) -> bool:
        return self._clock() >= self.expires_at

    def clamp(self, requested: Optional[float]) -> float:
        """Clamp a requested timeout to what is left of this deadline."""
        remaining = self.remaining()
        if requested is None:
            return remaining
        return min(requested, remaining)

    def sleep(self, seconds: float, sleep: Callable[[float], None] = time.sleep) -> bool:
        """Sleep up to ``seconds`` without passing the deadline.

        Returns False when the deadline left no time to sleep.
        """
        delay = self.clamp(seconds)
        if delay <= 0:
            return False
        sleep(delay)
        return True

    def __repr__(self) -> str:
        return f"Deadline(name={self.name!r}, remaining={self.remaining():.2f}s)"

