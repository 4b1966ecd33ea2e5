"""Reconnect backoff for the broker session."""

from __future__ import annotations

import random

from tesy_bridge.const import TESY_BROKER_RECONNECT_MAX, TESY_BROKER_RECONNECT_PERIOD


class RetryPolicy:
    """Exponential backoff retry policy with jitter.

    Provides retry delay calculation using exponential backoff with random
    jitter so that many bridges restarting together do not reconnect in
    lockstep.
    """

    def __init__(
        self,
        base_delay_seconds: float = TESY_BROKER_RECONNECT_PERIOD,
        max_delay_seconds: float = TESY_BROKER_RECONNECT_MAX,
        jitter_factor: float = 0.1,
    ):
        """Initialize retry policy.

        Args:
            base_delay_seconds: Base delay for first retry (default: 5s)
            max_delay_seconds: Maximum delay cap before jitter (default: 60s)
            jitter_factor: Jitter as fraction of delay (default: 0.1 = 10%)
        """
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_factor = jitter_factor

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt.

        Formula: min(base_delay * (2 ** attempt), max_delay) + jitter
        Jitter: random value between 0 and delay * jitter_factor

        Args:
            attempt: Retry attempt number (0-indexed, so attempt=0 is first retry)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay_seconds * (2 ** max(attempt, 0))
        delay = min(delay, self.max_delay_seconds)

        jitter = random.uniform(0, delay * self.jitter_factor)
        return delay + jitter

    def __repr__(self) -> str:
        """String representation of retry policy."""
        return (
            f"RetryPolicy(base_delay={self.base_delay_seconds}s, "
            f"max_delay={self.max_delay_seconds}s, "
            f"jitter_factor={self.jitter_factor})"
        )
