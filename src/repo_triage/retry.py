"""Exponential backoff with jitter, shared by agent dispatch and tracker calls."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_ms: int = 500
    max_backoff_ms: int = 30_000
    jitter_fraction: float = 0.25

    @classmethod
    def from_config(cls, section: dict[str, Any], attempts_key: str = "max_retries") -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(section.get(attempts_key, 3))),
            initial_backoff_ms=int(section.get("initial_backoff_ms", 500)),
            max_backoff_ms=int(section.get("max_backoff_ms", 30_000)),
        )

    def delay_seconds(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based): base doubling, plus up to 25% jitter, capped."""
        base_ms = self.initial_backoff_ms * (2 ** (attempt - 1))
        jitter_ms = base_ms * self.jitter_fraction * random.random()
        return min(base_ms + jitter_ms, self.max_backoff_ms) / 1000.0


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    is_transient: Callable[[Exception], bool],
    label: str = "",
) -> T:
    """Call ``func`` until it succeeds, a non-transient error is raised, or attempts run out."""
    attempt = 1
    while True:
        try:
            return func()
        except Exception as exc:
            if attempt >= policy.max_attempts or not is_transient(exc):
                raise
            delay = policy.delay_seconds(attempt)
            _LOGGER.info(
                "[%s] transient failure on attempt %d/%d (%s), retrying in %.2fs",
                label,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            time.sleep(delay)
            attempt += 1
