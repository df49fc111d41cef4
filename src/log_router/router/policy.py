from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from ..errors import SinkError
from ..settings import DestinationConfig

_TRANSIENT_HINTS = (
    "timeout",
    "timed out",
    "throttl",
    "rate limit",
    "temporar",
    "unavailable",
    "busy",
    "retry",
    "connection reset",
)


def default_retry_classifier(exc: BaseException) -> bool:
    """True if the error looks transient (network, timeout, throttling)."""
    if isinstance(exc, SinkError):
        return exc.transient
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    msg = str(exc).lower()
    return any(hint in msg for hint in _TRANSIENT_HINTS)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff bounded by attempt count and total wait.

    Delays are in seconds: ``backoff_base * backoff_multiplier ** (attempt - 1)``
    capped at ``backoff_max``; with jitter, 50-100% of that value.
    """

    max_attempts: int = 3
    backoff_base: float = 0.1
    backoff_max: float = 5.0
    backoff_multiplier: float = 2.0
    max_total_wait: float = 30.0
    jitter: bool = True
    classify_retryable: Callable[[BaseException], bool] = field(default=default_retry_classifier)

    def next_backoff(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.backoff_max, self.backoff_base * (self.backoff_multiplier ** max(0, attempt - 1)))
        if self.jitter:
            delay = random.uniform(delay * 0.5, delay)
        return delay

    @classmethod
    def from_config(cls, cfg: DestinationConfig, **overrides) -> "RetryPolicy":
        values = dict(
            max_attempts=cfg.retry_max_attempts,
            backoff_base=cfg.retry_backoff_base,
            backoff_max=cfg.retry_backoff_max,
            max_total_wait=cfg.retry_max_total_wait,
        )
        values.update(overrides)
        return cls(**values)
