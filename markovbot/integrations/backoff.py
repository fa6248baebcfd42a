"""
Reconnection backoff.

Capped exponential delays for the session's reconnect loop. Attempts are
never limited; only the interval between them is.
"""

from typing import List


class ExponentialBackoff:
    """Produces non-decreasing delays: initial, initial*m, initial*m^2, ... up to max_delay."""

    def __init__(self, initial_delay: float = 1.0, max_delay: float = 300.0, multiplier: float = 2.0):
        if initial_delay < 0:
            raise ValueError("initial_delay must not be negative")
        if max_delay < initial_delay:
            raise ValueError("max_delay must be at least initial_delay")
        if multiplier < 1.0:
            raise ValueError("multiplier must be at least 1.0")

        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self._current = initial_delay
        self.attempts = 0
        self.history: List[float] = []

    def next_delay(self) -> float:
        delay = min(self._current, self.max_delay)
        # Grow iteratively so long outages never overflow the float
        self._current = min(self._current * self.multiplier, self.max_delay)
        self.attempts += 1
        self.history.append(delay)
        return delay

    def reset(self) -> None:
        self._current = self.initial_delay
        self.attempts = 0

    def __repr__(self) -> str:
        return (
            f"ExponentialBackoff(initial_delay={self.initial_delay}, "
            f"max_delay={self.max_delay}, multiplier={self.multiplier}, attempts={self.attempts})"
        )
