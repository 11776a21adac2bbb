from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 300.0
    jitter: float = 0.0  # fraction of the delay, 0.0 disables

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay <= 0 or self.max_delay < self.base_delay:
            raise ValueError("need 0 < base_delay <= max_delay")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Seconds to wait after the ``attempt``-th failed attempt (1-based)."""
        if attempt < 1:
            attempt = 1
        # cap the exponent so huge attempt counts do not overflow
        delay = min(self.base_delay * (2 ** min(attempt - 1, 32)), self.max_delay)
        if self.jitter:
            r = (rng or random).uniform(-self.jitter, self.jitter)
            delay = max(0.0, min(delay * (1.0 + r), self.max_delay))
        return delay

    def exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts
