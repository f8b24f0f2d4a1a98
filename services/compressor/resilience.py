from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import CircuitOpenError, RateLimitedError, TransientRemoteError, http_error
from .settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


class CircuitBreaker:
    """Per-operation breaker: closed -> open after N failed calls -> half_open after cooldown."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock

        self.state = "closed"
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False

    def can_execute(self) -> bool:
        if self.state == "closed":
            return True
        if self.state == "open":
            if self.opened_at is not None and self.clock() - self.opened_at >= self.cooldown_seconds:
                self.state = "half_open"
                self._trial_in_flight = False
            else:
                return False
        # half_open: a single trial call
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        self.state = "closed"
        self.failure_count = 0
        self.opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._open()

    def release(self) -> None:
        """The trial call ended without a verdict (e.g. rate limited)."""
        self._trial_in_flight = False

    def _open(self) -> None:
        if self.state != "open":
            logger.warning(f"Circuit '{self.name}' opened after {self.failure_count} failures")
        self.state = "open"
        self.opened_at = self.clock()
        self._trial_in_flight = False


class Resilience:
    """
    Wraps every collaborator call: timeout, retry with exponential backoff
    for transient failures, and a circuit breaker per operation name.
    Rate-limit errors are neither retried nor counted by the breaker.
    """

    def __init__(
        self,
        retry: Optional[RetryPolicy] = None,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retry = retry or RetryPolicy()
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.timeout = timeout
        self.sleep = sleep
        self.clock = clock
        self.breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "Resilience":
        return cls(
            retry=RetryPolicy(settings.retry_max_attempts, settings.retry_base_delay_s, settings.retry_max_delay_s),
            failure_threshold=settings.breaker_threshold,
            cooldown_seconds=settings.breaker_cooldown_s,
            timeout=settings.call_timeout_s,
            **kwargs,
        )

    def breaker(self, operation: str) -> CircuitBreaker:
        if operation not in self.breakers:
            self.breakers[operation] = CircuitBreaker(
                operation, self.failure_threshold, self.cooldown_seconds, clock=self.clock
            )
        return self.breakers[operation]

    async def _attempt(self, operation: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        try:
            if self.timeout:
                return await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout)
            return await fn(*args, **kwargs)
        except asyncio.TimeoutError as e:
            raise TransientRemoteError(operation, "timed out") from e
        except Exception as e:
            mapped = http_error(e, operation)
            if mapped is e:
                raise
            raise mapped from e

    async def call(self, operation: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        breaker = self.breaker(operation)
        if not breaker.can_execute():
            raise CircuitOpenError(operation, "circuit open")

        attempt = 0
        while True:
            try:
                result = await self._attempt(operation, fn, *args, **kwargs)
            except RateLimitedError:
                breaker.release()
                raise
            except TransientRemoteError as e:
                attempt += 1
                if attempt >= self.retry.max_attempts:
                    breaker.record_failure()
                    raise
                delay = self.retry.delay(attempt - 1)
                logger.info(f"{operation} failed ({e}); retry {attempt}/{self.retry.max_attempts - 1} in {delay:.1f}s")
                await self.sleep(delay)
                continue
            except Exception:
                breaker.record_failure()
                raise
            breaker.record_success()
            return result
