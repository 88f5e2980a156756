"""Rate limiting data models.

This module contains dataclasses for fixed-window counter state and
admission decisions.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class RateLimitEntry:
    """Fixed-window counter for one ``<prefix>:<client>`` key."""
    count: int = 0
    reset_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        """Check if the window has passed (strictly after ``reset_at``)."""
        return now > self.reset_at


@dataclass
class RateLimitDecision:
    """Result of an admission check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None
