"""Retry decisions and backoff for classified worker failures."""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from nightly import log
from nightly.engine_errors import ErrorKind, classify
from nightly.errors import (
    FatalWorkerError,
    RateLimitError,
    TransientWorkerError,
    UsageLimitError,
    WorkerError,
    WorkerTimeout,
)

T = TypeVar("T")

USAGE_LIMIT_MAX_DELAY = 5 * 60 * 60.0
DEFAULT_MAX_DELAY = 15 * 60.0
JITTER_RATIO = 0.3

_MULTIPLIERS: dict[ErrorKind, float] = {
    ErrorKind.USAGE_LIMIT: 2.0,
    ErrorKind.RATE_LIMIT: 1.5,
}

_ERROR_TYPES: dict[ErrorKind, type[WorkerError]] = {
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.USAGE_LIMIT: UsageLimitError,
    ErrorKind.TIMEOUT: WorkerTimeout,
    ErrorKind.FATAL: FatalWorkerError,
    ErrorKind.TRANSIENT: TransientWorkerError,
}

_LIMIT_LABELS: dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMIT: "rate limit",
    ErrorKind.USAGE_LIMIT: "usage limit",
}


@dataclass
class RetryPolicy:
    """Retry policy keyed by :class:`ErrorKind`.

    ``attempt`` is the zero-based index of the attempt that just failed.
    ``max_attempts`` bounds the number of retries after the first invocation,
    so an operation runs at most ``max_attempts + 1`` times.
    """

    max_attempts: int = 5
    base_delay: float = 60.0
    exponential: bool = True
    jitter: bool = False
    max_delay: float | None = None
    transient_retries: int = 2
    transient_delay: float = 5.0
    retry_usage_limits: bool = True
    keepalive_interval: float = 30.0

    def should_retry(self, kind: ErrorKind, attempt: int, max_attempts: int | None = None) -> bool:
        limit = self.max_attempts if max_attempts is None else max_attempts
        if kind in (ErrorKind.FATAL, ErrorKind.TIMEOUT):
            return False
        if kind == ErrorKind.TRANSIENT:
            return attempt < min(limit, self.transient_retries)
        if kind == ErrorKind.USAGE_LIMIT and not self.retry_usage_limits:
            return False
        return attempt < limit

    def ceiling(self, kind: ErrorKind) -> float:
        if self.max_delay is not None:
            return self.max_delay
        return USAGE_LIMIT_MAX_DELAY if kind == ErrorKind.USAGE_LIMIT else DEFAULT_MAX_DELAY

    def backoff_delay(
        self,
        kind: ErrorKind,
        attempt: int,
        base_delay: float | None = None,
        *,
        rng: Callable[[], float] = random.random,
    ) -> float:
        """Seconds to wait before retrying after a failed *attempt*."""
        if kind == ErrorKind.TRANSIENT:
            return min(self.transient_delay, self.ceiling(kind))

        delay = self.base_delay if base_delay is None else base_delay
        if self.exponential:
            multiplier = _MULTIPLIERS.get(kind, 1.5)
            try:
                delay = delay * math.pow(multiplier, attempt)
            except OverflowError:
                delay = math.inf
        if self.jitter:
            delay = delay * (1 + rng() * JITTER_RATIO)
        return min(delay, self.ceiling(kind))

    def wait_with_keepalive(
        self,
        delay: float,
        kind: ErrorKind,
        on_tick: Callable[[], None] | None = None,
        *,
        tick: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Sleep *delay* seconds in keepalive ticks, calling *on_tick* on each one.

        There is no internal timeout; only process shutdown (``KeyboardInterrupt``
        / ``SystemExit``) ends the wait early.
        """
        label = _LIMIT_LABELS.get(kind, "retry")
        log.info(f"Session paused due to {label}. Keeping session alive...")
        interval = self.keepalive_interval if tick is None else tick
        remaining = delay
        while remaining > 0:
            if remaining <= interval:
                sleep(remaining)
                break
            log.info(f"Waiting for {label} reset... {math.ceil(remaining / 60)} minutes remaining")
            if on_tick is not None:
                on_tick()
            sleep(interval)
            remaining -= interval
        log.success(f"{label.capitalize()} wait completed. Resuming execution...")


def as_classified(exc: WorkerError, kind: ErrorKind) -> WorkerError:
    """Return *exc* re-typed to the exception class for *kind*."""
    cls = _ERROR_TYPES[kind]
    if isinstance(exc, cls):
        return exc
    return cls(str(exc))


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    on_tick: Callable[[], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "worker",
) -> T:
    """Run *operation*, retrying classified :class:`WorkerError` failures per *policy*.

    The final failure is re-raised as the exception type matching its
    classification once retries are exhausted or the error is not retryable.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except WorkerError as exc:
            kind = classify(exc)
            if not policy.should_retry(kind, attempt):
                if attempt > 0:
                    log.error(f"{label} failed after {attempt + 1} attempts ({kind.value})")
                raise as_classified(exc, kind) from exc

            delay = policy.backoff_delay(kind, attempt)
            log.warn(
                f"{label} failed ({kind.value}): {exc}. Waiting {round(delay)}s before retry "
                f"(retry {attempt + 1}/{policy.max_attempts})..."
            )
            if kind in _LIMIT_LABELS:
                policy.wait_with_keepalive(delay, kind, on_tick, sleep=sleep)
            else:
                sleep(delay)
            attempt += 1
