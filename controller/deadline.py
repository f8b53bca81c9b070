import time
from typing import Callable

from errors import CycleDeadlineExceeded


class Deadline:
    """Time budget for one site's cycle.

    Stages call check() before starting; network calls use timeout() so no
    single request can outlive the cycle.
    """

    def __init__(self, timeout_s: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.expires_at = clock() + timeout_s

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def check(self, stage: str):
        if self.expired:
            raise CycleDeadlineExceeded(stage)

    def timeout(self, default: float) -> float:
        """Request timeout bounded by what is left; at least a token amount."""
        return max(0.1, min(default, self.remaining()))
