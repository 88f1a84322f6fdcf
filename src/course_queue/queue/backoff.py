"""Retry delay policy for failed jobs."""

from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass(slots=True)
class BackoffPolicy:
    """Capped exponential backoff with proportional jitter.

    ``delay(n) = min(max_seconds, base_seconds * factor**(n-1) * (1 + U(-jitter, jitter)))``.
    With factor 2 and jitter below 1/3 the uncapped values never overlap, so
    the sequence is non-decreasing regardless of the random draws.
    """

    base_seconds: float = 5.0
    factor: float = 2.0
    max_seconds: float = 600.0
    jitter: float = 0.2
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be > 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def delay_seconds(self, attempts: int) -> float:
        """Delay before the next run after ``attempts`` failed attempts (1-based)."""

        exponent = min(max(attempts - 1, 0), 64)
        raw = self.base_seconds * (self.factor**exponent)
        if raw >= self.max_seconds:
            return self.max_seconds
        spread = self.rng.uniform(-self.jitter, self.jitter) if self.jitter else 0.0
        return min(self.max_seconds, raw * (1 + spread))
