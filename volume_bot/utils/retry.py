"""
Backoff helpers for the network adapters.

- async_retry: re-run a coroutine on transient transport errors (price feeds)
- CircuitBreaker: stop sending trades to a venue that keeps failing
"""

import asyncio
import logging
import time
from functools import wraps
from typing import Any, Callable

logger = logging.getLogger("volume_bot.retry")


def async_retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Retry an async function with exponential backoff.

    Only ``exceptions`` trigger a retry; anything else propagates on the
    first attempt. The last failure is re-raised unchanged.

    Example:
        @async_retry(max_attempts=2, delay=0.5, exceptions=(httpx.TransportError,))
        async def _fetch_jupiter(self, mint):
            ...
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            wait = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        logger.error("%s gave up after %d attempts: %s", func.__name__, attempt, e)
                        raise
                    logger.warning(
                        "%s attempt %d/%d failed (%s), next try in %.2fs",
                        func.__name__, attempt, max_attempts, e, wait,
                    )
                    await asyncio.sleep(wait)
                    wait *= backoff

        return wrapper
    return decorator


class CircuitBreaker:
    """
    Trips after ``failure_threshold`` consecutive failures.

    CLOSED   -> every call allowed
    OPEN     -> calls refused until ``recovery_timeout`` has passed
    HALF_OPEN -> exactly one probe call; its outcome closes or re-opens

    Usage:
        breaker = CircuitBreaker(failure_threshold=5, name="PumpPortal")
        if not breaker.can_execute():
            return TradeResult(success=False, error="circuit breaker open")
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        name: str = "default"
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name

        self.failures = 0
        self.state = "CLOSED"
        self._opened_at = 0.0
        self._probing = False

    def record_success(self):
        if self.state != "CLOSED":
            logger.info("Circuit breaker '%s' closed", self.name)
        self.failures = 0
        self.state = "CLOSED"
        self._probing = False

    def record_failure(self):
        self.failures += 1
        if self.state == "HALF_OPEN" or (self.state == "CLOSED" and self.failures >= self.failure_threshold):
            self.state = "OPEN"
            self._opened_at = time.monotonic()
            self._probing = False
            logger.warning("Circuit breaker '%s' OPEN after %d failures", self.name, self.failures)

    def retry_in(self) -> float:
        """Seconds until an open breaker lets a probe through."""
        if self.state != "OPEN":
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self._opened_at))

    def can_execute(self) -> bool:
        if self.state == "CLOSED":
            return True

        if self.state == "OPEN":
            if self.retry_in() > 0:
                return False
            self.state = "HALF_OPEN"
            logger.info("Circuit breaker '%s' HALF_OPEN, sending probe", self.name)

        if self._probing:
            return False
        self._probing = True
        return True

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "state": self.state,
            "failures": self.failures,
            "threshold": self.failure_threshold,
            "retry_in": round(self.retry_in(), 1),
        }
