from __future__ import annotations

from dataclasses import dataclass


def backoff_delay(attempt: int, *, base_delay: float, max_delay: float) -> float:
    """Return the delay in seconds before retry number ``attempt`` (1-based).

    Exponential: base, 2*base, 4*base, ... capped at ``max_delay``.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry policy for transient API failures."""

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(
            attempt, base_delay=self.base_delay, max_delay=self.max_delay
        )

    def should_retry(self, attempt: int) -> bool:
        """True when another attempt is allowed after ``attempt`` failed."""
        return attempt < self.max_attempts

    @staticmethod
    def is_retryable_status(status: int) -> bool:
        return status == 429 or 500 <= status < 600
