"""Retry with exponential backoff and a circuit breaker for model calls."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from .config import RetryConfig
from .providers import ModelError, ModelErrorKind, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MULTIPLIER = 2.0
JITTER_FRACTION = 0.1


class CircuitOpenError(RuntimeError):
    """Raised without calling the model while the breaker is open."""


@dataclass
class RetryPolicy:
    """Retries retryable :class:`ModelError` kinds, propagates fatal ones.

    After ``circuit_breaker_threshold`` consecutive calls that exhaust
    their retries the breaker opens and calls fail fast until
    ``circuit_reset_seconds`` have passed.
    """

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    circuit_breaker_threshold: int = 5
    circuit_reset_seconds: float = 60.0
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    jitter: Callable[[], float] = random.random
    consecutive_failures: int = field(default=0, init=False)
    _open_until: Optional[float] = field(default=None, init=False)

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=cfg.max_retries,
            base_delay_seconds=cfg.base_delay_seconds,
            max_delay_seconds=cfg.max_delay_seconds,
            circuit_breaker_threshold=cfg.circuit_breaker_threshold,
            circuit_reset_seconds=cfg.circuit_reset_seconds,
        )

    @property
    def circuit_open(self) -> bool:
        return self._open_until is not None and self.clock() < self._open_until

    def backoff(self, attempt: int, kind: ModelErrorKind) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.base_delay_seconds * (2 ** (attempt - 1))
        if kind is ModelErrorKind.RATE_LIMITED:
            delay *= RATE_LIMIT_MULTIPLIER
        delay = min(delay, self.max_delay_seconds)
        return delay + delay * JITTER_FRACTION * self.jitter()

    def call(self, fn: Callable[[], T], context: str = "operation") -> T:
        if self._open_until is not None:
            if self.clock() < self._open_until:
                remaining = self._open_until - self.clock()
                raise CircuitOpenError(
                    f"Circuit breaker open after repeated failures; retry in {remaining:.0f}s"
                )
            logger.info("Circuit breaker reset")
            self._open_until = None
            self.consecutive_failures = 0

        attempt = 0
        while True:
            try:
                result = fn()
            except Exception as e:
                kind = classify_error(e)
                if kind is ModelErrorKind.FATAL:
                    logger.debug("%s failed with non-retryable error: %s", context, e)
                    raise
                attempt += 1
                if attempt > self.max_retries:
                    self._record_exhausted()
                    if isinstance(e, ModelError):
                        raise
                    raise ModelError(str(e), kind=kind) from e
                delay = self.backoff(attempt, kind)
                logger.warning(
                    "%s failed (attempt %d/%d, %s): %s; retrying in %.1fs",
                    context,
                    attempt,
                    self.max_retries + 1,
                    kind.value,
                    e,
                    delay,
                )
                self.sleep(delay)
                continue

            self.consecutive_failures = 0
            return result

    def _record_exhausted(self) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.circuit_breaker_threshold:
            self._open_until = self.clock() + self.circuit_reset_seconds
            logger.error(
                "Circuit breaker opened after %d consecutive failures; pausing %.0fs",
                self.consecutive_failures,
                self.circuit_reset_seconds,
            )
