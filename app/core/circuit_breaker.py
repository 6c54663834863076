"""
Circuit breaker shared through the Django cache.

Web and Celery workers all read and write the same cache keys, so once
the payment gateway has failed failure_threshold times in a row every
process stops calling it until recovery_timeout has passed. After that a
limited number of trial calls go through (half-open): a success closes
the circuit, a failure opens it again.

    breaker = CircuitBreaker(name="paypal-api", failure_threshold=5)

    if not breaker.is_available():
        raise GatewayUnavailableError("Gateway circuit is open")
    try:
        response = session.post(...)
    except requests.ConnectionError:
        breaker.record_failure()
        raise
    breaker.record_success()

    with breaker.call():  # records the outcome itself
        response = session.get(...)

Record only availability failures (timeouts, 5xx, connection errors). A
declined card or a validation error says nothing about the gateway's health.

A broken cache must not take payments down with it: cache errors are
logged and the breaker answers "available".
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from django.core.cache import cache

if TYPE_CHECKING:
    from collections.abc import Generator

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: int = 60
    half_open_max_calls: int = 1
    # Must outlive recovery_timeout
    cache_ttl: int = 3600


class CircuitOpenError(Exception):
    """A call was refused because the circuit is open; nothing was sent."""


class CircuitBreaker:
    """
    Failure counter and state for one remote service.

    Instances are cheap; two instances with the same name share state.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 1,
    ):
        self.name = name
        self.config = CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            half_open_max_calls=half_open_max_calls,
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def is_available(self) -> bool:
        """
        Whether a call may be made now.

        Past the recovery timeout an open circuit turns half-open and this
        call counts as one of the trial calls.
        """
        try:
            state = self._state()
            if state == CircuitState.CLOSED:
                return True

            if state == CircuitState.OPEN:
                if not self._recovery_due():
                    return False
                self._write(CircuitState.HALF_OPEN)
                cache.set(self._key("trial_calls"), 0, timeout=self.config.cache_ttl)
                logger.info("Circuit half-open, allowing trial calls", extra={"circuit": self.name})

            return self._incr("trial_calls") <= self.config.half_open_max_calls
        except Exception as exc:
            logger.warning(
                f"Circuit breaker cache unavailable, allowing call: {exc}",
                extra={"circuit": self.name},
            )
            return True

    def record_success(self) -> None:
        try:
            if self._state() == CircuitState.HALF_OPEN:
                self._write(CircuitState.CLOSED)
                logger.info("Circuit closed after successful trial call", extra={"circuit": self.name})
            cache.set(self._key("failures"), 0, timeout=self.config.cache_ttl)
        except Exception as exc:
            logger.warning(
                f"Circuit breaker could not record success: {exc}",
                extra={"circuit": self.name},
            )

    def record_failure(self) -> None:
        try:
            if self._state() == CircuitState.HALF_OPEN:
                self._open()
                logger.warning("Circuit reopened, trial call failed", extra={"circuit": self.name})
                return

            failures = self._incr("failures")
            if failures >= self.config.failure_threshold:
                self._open()
                logger.warning(
                    f"Circuit opened after {failures} consecutive failures",
                    extra={"circuit": self.name, "failure_count": failures},
                )
        except Exception as exc:
            logger.warning(
                f"Circuit breaker could not record failure: {exc}",
                extra={"circuit": self.name},
            )

    @contextmanager
    def call(self) -> Generator[None, None, None]:
        """
        Guard a block: refuse it when open, record how it ended otherwise.

        Raises:
            CircuitOpenError: The circuit does not allow the call
        """
        if not self.is_available():
            raise CircuitOpenError(f"Circuit '{self.name}' is open")
        try:
            yield
        except Exception:
            self.record_failure()
            raise
        self.record_success()

    def reset(self) -> None:
        """Close the circuit and zero its counters (admin/maintenance use)."""
        cache.delete_many([self._key(part) for part in ("state", "failures", "opened_at", "trial_calls")])
        logger.info("Circuit manually reset", extra={"circuit": self.name})

    def get_status(self) -> dict:
        """State snapshot for the health endpoint."""
        state = self._state()
        status = {
            "name": self.name,
            "state": state.value,
            "failure_count": cache.get(self._key("failures"), 0),
            "failure_threshold": self.config.failure_threshold,
        }
        opened_at = cache.get(self._key("opened_at"))
        if state == CircuitState.OPEN and opened_at:
            remaining = self.config.recovery_timeout - (time.time() - opened_at)
            status["recovery_in_seconds"] = max(0, int(remaining))
        return status

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self._state().value})"

    # =========================================================================
    # Cache access
    # =========================================================================

    def _key(self, part: str) -> str:
        return f"circuit:{self.name}:{part}"

    def _state(self) -> CircuitState:
        try:
            return CircuitState(cache.get(self._key("state"), CircuitState.CLOSED.value))
        except ValueError:
            return CircuitState.CLOSED

    def _write(self, state: CircuitState) -> None:
        cache.set(self._key("state"), state.value, timeout=self.config.cache_ttl)

    def _open(self) -> None:
        self._write(CircuitState.OPEN)
        cache.set(self._key("opened_at"), time.time(), timeout=self.config.cache_ttl)

    def _recovery_due(self) -> bool:
        opened_at = cache.get(self._key("opened_at"))
        return bool(opened_at) and time.time() - opened_at >= self.config.recovery_timeout

    def _incr(self, part: str) -> int:
        key = self._key(part)
        try:
            return cache.incr(key)
        except ValueError:
            # incr() refuses missing keys
            cache.set(key, 1, timeout=self.config.cache_ttl)
            return 1
