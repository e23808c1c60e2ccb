"""
Retry policy configuration for step execution.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates retry behavior, so the inline executor and the
queue layer derive their waits from the same record instead of
duplicating the arithmetic.

A step's ``retry_delay`` is either a fixed delay in milliseconds or the
string ``"exponential"``. Safe default: no retries, no delay.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Union, cast

EXPONENTIAL = "exponential"

RetryDelay = Union[int, float, Literal["exponential"]]
"""Fixed delay in milliseconds, or ``"exponential"``."""


@dataclass(frozen=True)
class Backoff:
    """Queue-level backoff description handed to a queue service.

    Attributes:
        type: ``"fixed"`` or ``"exponential"``
        delay: Delay in milliseconds (base delay for exponential)
    """

    type: Literal["fixed", "exponential"]
    delay: int

    def delay_for_attempt(self, attempt: int) -> int:
        """Delay before redelivering after the given (1-indexed) failed attempt."""
        if self.type == "fixed":
            return self.delay
        return self.delay * 2 ** max(attempt - 1, 0)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for step retry behavior.

    Examples:
        # No retries (default)
        policy = RetryPolicy.NONE

        # Three retries, one second apart
        policy = RetryPolicy(retries=3, retry_delay=1000)

        # Exponential backoff starting at one second, capped at 30s
        policy = RetryPolicy(retries=5, retry_delay="exponential")
    """

    retries: int = 0
    """Number of retries after the first attempt.

    retries = 2 means three attempts in total.
    """

    retry_delay: RetryDelay = 0
    """Fixed delay in milliseconds, or "exponential"."""

    initial_delay_ms: int = 1000
    """Base delay of the exponential strategy."""

    max_delay_ms: int = 30000
    """Cap of the exponential strategy."""

    backoff_multiplier: float = 2.0
    """Multiplier of the exponential strategy."""

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)

    @property
    def max_attempts(self) -> int:
        """Maximum number of attempts, including the first try."""
        return self.retries + 1

    @property
    def is_exponential(self) -> bool:
        return self.retry_delay == EXPONENTIAL

    def delay_for_attempt(self, attempt: int) -> int | None:
        """
        Calculate the delay before retrying after a failed attempt.

        Args:
            attempt: The attempt that just failed (1-indexed)

        Returns:
            Delay in milliseconds, or None if no attempts are left.

        Example:
            policy = RetryPolicy(retries=2, retry_delay="exponential")
            policy.delay_for_attempt(1)  # 1000
            policy.delay_for_attempt(2)  # 2000
            policy.delay_for_attempt(3)  # None
        """
        if attempt >= self.max_attempts:
            return None

        if not self.is_exponential:
            return int(self.retry_delay)

        delay_ms = self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)
        return int(min(delay_ms, self.max_delay_ms))

    def backoff(self) -> Backoff:
        """Map the policy onto a queue backoff description."""
        if self.is_exponential:
            return Backoff(type="exponential", delay=self.initial_delay_ms)
        return Backoff(type="fixed", delay=int(self.retry_delay))

    def __repr__(self) -> str:
        return f"RetryPolicy(retries={self.retries}, retry_delay={self.retry_delay!r})"


RetryPolicy.NONE = RetryPolicy(retries=0, retry_delay=0)

RetryPolicy.STANDARD = RetryPolicy(retries=2, retry_delay=EXPONENTIAL)
