"""
Retry policy and error classification for transaction functions.

Usage:
    policy = RetryPolicy(max_retry_time=30.0, initial_delay=0.5)
    classifier = ErrorClassifier(extra_retryable_codes={"Neo.ClientError.Cluster.NotALeader"})
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable, Iterable

from graphlink.exceptions import (
    ConfigurationError,
    DeadlineExceededError,
    IncompleteCommitError,
    NetworkError,
    NON_RETRYABLE_TRANSIENT_CODES,
    PoolClosedError,
    RetriesExhaustedError,
    RoutingError,
    TransientError,
)


@dataclass
class RetryPolicy:
    """
    Retry budget and back-off configuration.

    Attributes:
        max_retry_time: Seconds after the first attempt during which retries may start
        max_attempts: Optional cap on the total number of attempts
        initial_delay: Delay before the first retry
        multiplier: Growth factor applied to the delay after each retry
        jitter: Relative jitter, the delay is scaled by a factor in [1 - jitter, 1 + jitter]
        max_delay: Upper bound of a single delay before jitter
    """
    max_retry_time: float = 30.0
    max_attempts: int | None = None
    initial_delay: float = 1.0
    multiplier: float = 2.0
    jitter: float = 0.2
    max_delay: float = 10.0

    def __post_init__(self) -> None:
        if self.max_retry_time < 0:
            raise ConfigurationError("max_retry_time must be >= 0", config_key="max_retry_time")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1", config_key="max_attempts")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0", config_key="initial_delay")
        if self.multiplier < 1:
            raise ConfigurationError("multiplier must be >= 1", config_key="multiplier")
        if not 0 <= self.jitter < 1:
            raise ConfigurationError("jitter must be in [0, 1)", config_key="jitter")

    def calculate_delay(self, retry: int, rng: random.Random | None = None) -> float:
        """Delay before retry number ``retry`` (1 for the first retry)."""
        delay = min(self.initial_delay * (self.multiplier ** (retry - 1)), self.max_delay)
        if self.jitter:
            rng = rng or random
            delay *= 1 + rng.uniform(-self.jitter, self.jitter)
        return max(delay, 0.0)

    def allows_retry(self, attempts: int, elapsed: float) -> bool:
        """Whether another attempt may start after ``attempts`` attempts and ``elapsed`` seconds."""
        if self.max_attempts is not None and attempts >= self.max_attempts:
            return False
        return elapsed < self.max_retry_time


@dataclass
class ErrorClassifier:
    """
    Decides which failures are worth replaying the whole unit of work for.

    The default rules retry TransientError (minus explicitly terminated
    transactions), RoutingError and connection failures whose outcome is
    known to be void. ``predicate`` may override the decision by returning
    True or False; returning None falls back to the rules.
    """
    extra_retryable_codes: frozenset[str] = field(default_factory=frozenset)
    extra_retryable_types: tuple[type[BaseException], ...] = ()
    non_retryable_codes: frozenset[str] = NON_RETRYABLE_TRANSIENT_CODES
    predicate: Callable[[BaseException], bool | None] | None = None

    def __post_init__(self) -> None:
        self.extra_retryable_codes = frozenset(self.extra_retryable_codes)
        self.non_retryable_codes = frozenset(self.non_retryable_codes)
        self.extra_retryable_types = tuple(self.extra_retryable_types)

    @classmethod
    def with_codes(cls, codes: Iterable[str]) -> "ErrorClassifier":
        return cls(extra_retryable_codes=frozenset(codes))

    def is_retryable(self, error: BaseException) -> bool:
        if self.predicate is not None:
            decision = self.predicate(error)
            if decision is not None:
                return decision

        if isinstance(error, RetriesExhaustedError):
            return False

        code = getattr(error, "code", None)
        if code is not None and code in self.extra_retryable_codes:
            return True
        if self.extra_retryable_types and isinstance(error, self.extra_retryable_types):
            return True

        if isinstance(error, TransientError):
            return code not in self.non_retryable_codes
        if isinstance(error, (IncompleteCommitError, DeadlineExceededError, PoolClosedError)):
            return False
        return isinstance(error, (NetworkError, RoutingError))

    __call__ = is_retryable
