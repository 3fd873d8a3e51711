from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff for transient upstream failures.

    `max_attempts` includes the first try. A server-supplied Retry-After wins
    over the computed delay when longer, capped at `retry_after_cap_seconds`.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    jitter_ratio: float = 0.2
    retry_after_cap_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("delays must satisfy 0 <= base_delay_seconds <= max_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0 and 1")

    def delay_for(self, failure_attempt: int, retry_after: float | None = None) -> float:
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, failure_attempt - 1)))
        if retry_after is not None and retry_after >= 0:
            delay = max(delay, min(retry_after, self.retry_after_cap_seconds))
        if delay > 0 and self.jitter_ratio > 0:
            delay *= random.uniform(1.0 - self.jitter_ratio, 1.0 + self.jitter_ratio)
        return max(0.0, delay)


@dataclass(frozen=True)
class RetryEvent:
    operation: str
    failure_attempt: int
    max_attempts: int
    delay_seconds: float
    reason: str | None
    error_type: str
    error_message: str


Classification = tuple[bool, float | None, str | None]
ClassifyFn = Callable[[BaseException], Classification]
OnRetryFn = Callable[[RetryEvent], None]
SleepFn = Callable[[float], None]


def call_with_retries(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    classify: ClassifyFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
) -> T:
    """
    Call fn(), retrying while classify(exc) reports (retryable, retry_after, reason).

    The last exception is re-raised unchanged once attempts run out or the
    failure is not retryable.
    """
    sleeper = sleep_fn or time.sleep
    attempt = 0

    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            retryable, retry_after, reason = classify(exc)
            if not retryable or attempt >= policy.max_attempts:
                raise

            delay = policy.delay_for(attempt, retry_after)
            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=operation,
                        failure_attempt=attempt,
                        max_attempts=policy.max_attempts,
                        delay_seconds=delay,
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=(str(exc) or "").strip(),
                    )
                )
            if delay > 0:
                sleeper(delay)
