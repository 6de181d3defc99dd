"""Token bucket gating how many estimated tokens may be sent to the model."""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class TokenBucket:
    """Process-wide admission controller for model calls.

    The bucket never sleeps. ``take`` either grants the request immediately
    (returns ``0``) or returns how many milliseconds the caller should wait
    before asking again. Pacing is the caller's job, see :func:`wait_for_tokens`.

    Args:
        capacity: Maximum number of tokens the bucket can hold.
        refill_rate: Tokens added per second.
        available: Starting amount, defaults to a full bucket.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        available: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._available = capacity if available is None else min(max(available, 0), capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._available

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._last_refill, 0.0)
        self._available = min(self.capacity, self._available + elapsed * self.refill_rate)
        self._last_refill = now

    def take(self, amount: float) -> int:
        """Try to spend ``amount`` tokens.

        Returns:
            ``0`` when the tokens were deducted, otherwise the minimum wait in
            milliseconds until enough tokens exist. Nothing is deducted in
            that case.
        """
        with self._lock:
            self._refill()
            if self._available >= amount:
                self._available -= amount
                return 0
            return math.ceil((amount - self._available) / self.refill_rate * 1000)


def wait_for_tokens(
    bucket: TokenBucket,
    amount: float,
    *,
    sleep: Callable[[float], None] = time.sleep,
    log: logging.Logger | None = None,
) -> float:
    """Block until ``bucket`` grants ``amount`` tokens.

    The requested amount is capped at the bucket capacity, otherwise it could
    never be granted. Returns the amount actually taken.
    """
    log = log or logger
    amount = min(amount, bucket.capacity)
    wait_ms = bucket.take(amount)
    while wait_ms != 0:
        log.info(f"Waiting for token bucket to refill: {amount} tokens needed ({wait_ms}ms)")
        sleep(wait_ms / 1000)
        wait_ms = bucket.take(amount)
    return amount


# Module-level singleton shared by every agent in the process
_shared_bucket: Optional[TokenBucket] = None
_shared_bucket_lock = threading.Lock()


def get_token_bucket() -> TokenBucket:
    """Get or create the process-wide token bucket from settings."""
    global _shared_bucket
    with _shared_bucket_lock:
        if _shared_bucket is None:
            _shared_bucket = TokenBucket(
                capacity=settings.token_bucket_capacity,
                refill_rate=settings.token_bucket_refill_rate,
            )
            logger.info(
                f"Token bucket created: capacity={settings.token_bucket_capacity}, "
                f"refill_rate={settings.token_bucket_refill_rate:.2f}/s"
            )
        return _shared_bucket


def reset_token_bucket() -> None:
    """Drop the shared bucket so the next call rebuilds it from settings."""
    global _shared_bucket
    with _shared_bucket_lock:
        _shared_bucket = None
