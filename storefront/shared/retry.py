"""
Shared: bounded exponential backoff

  delay(n) = min(base_delay * multiplier ** n, max_delay) ± jitter

``n`` is the 0-based number of failures so far. The caller sleeps with
``asyncio.sleep`` inside its own task, so a retrying event never holds up
any other event.
"""

import random
from dataclasses import dataclass

from .config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 8
    base_delay: float = 0.5
    multiplier: float = 1.5
    max_delay: float = 30.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    def backoff(self, failures: int, rng: random.Random | None = None) -> float:
        delay = min(self.base_delay * self.multiplier**failures, self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return max(0.0, delay)
