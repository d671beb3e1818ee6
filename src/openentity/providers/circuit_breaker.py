"""
OpenEntity Circuit Breaker

Time-windowed exclusion of failing providers from the dispatch
candidate list.

Unlike a request-counted breaker with a HALF_OPEN trial request, this one is
derived purely from a provider's persisted health fields:

- CLOSED: error_count below threshold, or the last error is older
  than the cooldown window
- OPEN:   error_count >= threshold AND now - last_error_at < cooldown

A provider therefore becomes eligible again on its own once the cooldown
elapses, with no manual reset. A manual reset (clearing error_count and
last_error_at) is still available through the dispatcher.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum

from openentity.providers.base import ProviderConfig


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitBreakerPolicy:
    """Decides whether a provider is currently excluded from dispatch."""

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the policy.

        Args:
            failure_threshold: error_count at which the circuit opens.
            cooldown: How long after the last error the circuit stays open.
            clock: Source of "now"; injectable for tests.
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def state(self, config: ProviderConfig) -> CircuitState:
        """Current circuit state for a provider's health fields."""
        if config.error_count < self.failure_threshold or config.last_error_at is None:
            return CircuitState.CLOSED
        if self.now() - config.last_error_at < self.cooldown:
            return CircuitState.OPEN
        return CircuitState.CLOSED

    def is_open(self, config: ProviderConfig) -> bool:
        return self.state(config) == CircuitState.OPEN

    def retry_at(self, config: ProviderConfig) -> datetime | None:
        """When an open circuit closes again, or None if it is closed."""
        if not self.is_open(config):
            return None
        return config.last_error_at + self.cooldown  # type: ignore[operator]
