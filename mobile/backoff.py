"""Retry delay policies.

A policy only answers "how long to wait after failed attempt N"; the retry
loops in ``mobile.push`` and ``mobile.realtime`` own the attempts. Keeping
the two apart lets a policy be tested without any network code.
"""

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


class BackoffPolicy(ABC):
    """Maps a 0-indexed failed attempt number to a delay in seconds."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        pass


@dataclass
class ExponentialBackoff(BackoffPolicy):
    """Exponential backoff with an optional cap and optional jitter.

    Attributes:
        base_delay: Delay after the first failure in seconds (default: 1.0)
        factor: Multiplier applied per further failure (default: 2.0)
        max_delay: Upper bound on the delay, None for uncapped
        jitter: Fraction of the delay to randomize, 0.5 = +/-50% (default: 0)

    Example:
        >>> policy = ExponentialBackoff(base_delay=1.0, max_delay=5.0)
        >>> [policy.next_delay(i) for i in range(4)]
        [1.0, 2.0, 4.0, 5.0]
    """

    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: Optional[float] = None
    jitter: float = 0.0
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.factor < 1:
            raise ValueError("factor must be at least 1")
        if self.max_delay is not None and self.max_delay < 0:
            raise ValueError("max_delay must not be negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def next_delay(self, attempt: int) -> float:
        """Calculate the delay after failed attempt ``attempt`` (0-indexed).

        delay = min(base_delay * factor ** attempt, max_delay), then jittered.
        """
        if attempt < 0:
            raise ValueError("attempt must not be negative")

        delay = self.base_delay * (self.factor ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        if self.jitter:
            spread = delay * self.jitter
            delay = self.rng.uniform(delay - spread, delay + spread)
            if self.max_delay is not None:
                delay = min(delay, self.max_delay)
        return max(0.0, delay)


@dataclass
class ConstantBackoff(BackoffPolicy):
    """Same delay after every failure."""

    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay
