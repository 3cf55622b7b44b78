"""Backoff polling, trigger jitter and the failure circuit breaker."""

import time
import random
from typing import Callable, Iterable, Optional, Tuple, TypeVar

from stackkeeper.resources.models import ReconcileOutcome
from stackkeeper.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class Backoff:
    """Exponential backoff used when polling external systems for readiness."""

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 15.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        """Initialize backoff.

        Args:
            base_delay: Delay in seconds before the second probe
            max_delay: Maximum delay in seconds between probes
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before the next probe.

        Args:
            attempt: Current probe number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Random value between 0 and 10% of delay
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def poll(
        self,
        probe: Callable[[], T],
        done: Callable[[T], bool],
        timeout: float,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ) -> Tuple[T, bool]:
        """Call ``probe`` until ``done`` accepts its result or ``timeout`` elapses.

        Exceptions raised by ``probe`` propagate to the caller.

        Returns:
            Tuple of the last probe result and whether ``done`` accepted it
        """
        deadline = clock() + timeout
        attempt = 0

        while True:
            value = probe()
            if done(value):
                return value, True

            remaining = deadline - clock()
            if remaining <= 0:
                logger.debug(f"Polling gave up after {attempt + 1} probes")
                return value, False

            sleep(min(self.get_delay(attempt), remaining))
            attempt += 1


def jittered(interval: float, fraction: float, rng: Optional[random.Random] = None) -> float:
    """Spread ``interval`` by +/- ``fraction`` to avoid synchronized triggers."""
    if fraction <= 0:
        return interval
    rng = rng or random
    return interval * (1 + rng.uniform(-fraction, fraction))


class CircuitBreaker:
    """Suppresses automatic attempts after repeated consecutive failures.

    Unlike an in-memory breaker, state is derived from the persisted
    reconciliation log so suppression survives restarts:
    - CLOSED: fewer than ``failure_threshold`` trailing failures
    - OPEN: at least ``failure_threshold`` trailing failures, only forced
      attempts run until one succeeds
    """

    def __init__(self, failure_threshold: int = 3):
        """Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failed outcomes before opening
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold

    def consecutive_failures(self, records: Iterable) -> int:
        """Count trailing Failed outcomes in chronological ``records``."""
        count = 0
        for record in reversed(list(records)):
            if record.outcome != ReconcileOutcome.FAILED:
                break
            count += 1
        return count

    def is_open(self, records: Iterable) -> bool:
        """Check whether automatic attempts are suspended."""
        return self.consecutive_failures(records) >= self.failure_threshold
