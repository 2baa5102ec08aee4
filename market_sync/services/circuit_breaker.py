"""
Circuit breaker for the marketplace APIs.
Stops hammering a provider that is down and lets it recover.
"""
import logging
import time
from enum import Enum
from typing import Dict, Optional

from market_sync.core.prometheus_metrics import circuit_breaker_failures_total, circuit_breaker_state
from market_sync.core.redis_client import get_redis_sync

logger = logging.getLogger(__name__)

_STATE_GAUGE = {"CLOSED": 0, "OPEN": 1, "HALF_OPEN": 2}


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Failing, reject requests
    HALF_OPEN = "HALF_OPEN"  # Testing if service recovered


class ProviderCircuitBreaker:
    """
    Circuit breaker for one provider, state shared through Redis.

    Opens after `failure_threshold` consecutive failures, moves to
    HALF_OPEN once `timeout` seconds have passed and closes again after
    `success_threshold` successes.
    """

    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout: int = 60,
        half_open_timeout: int = 30,
    ):
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self.half_open_timeout = half_open_timeout
        self.redis = get_redis_sync()
        self.circuit_key = f"circuit_breaker:{provider}"

    def get_state(self) -> CircuitState:
        state_str = self.redis.get(f"{self.circuit_key}:state")
        if state_str is None:
            return CircuitState.CLOSED
        state_str = state_str.decode() if isinstance(state_str, bytes) else state_str
        return CircuitState(state_str)

    def set_state(self, state: CircuitState) -> None:
        self.redis.setex(f"{self.circuit_key}:state", self.timeout * 2, state.value)
        circuit_breaker_state.labels(service=self.provider).set(_STATE_GAUGE[state.value])
        logger.info(f"Circuit breaker for {self.provider} changed to {state.value}")

    def record_failure(self, error_type: str = "generic") -> None:
        """Record a failure and open the circuit once the threshold is reached."""
        failures_key = f"{self.circuit_key}:failures"
        failures = self.redis.incr(failures_key)
        self.redis.expire(failures_key, self.timeout)

        self.redis.hincrby(f"{self.circuit_key}:error_types", error_type, 1)
        self.redis.expire(f"{self.circuit_key}:error_types", self.timeout)
        circuit_breaker_failures_total.labels(service=self.provider, error_type=error_type).inc()

        logger.warning(
            f"Circuit breaker {self.provider}: failure recorded "
            f"({failures}/{self.failure_threshold}), error_type={error_type}"
        )

        if failures >= self.failure_threshold:
            self.set_state(CircuitState.OPEN)
            self.redis.setex(f"{self.circuit_key}:opened_at", self.timeout * 2, time.time())
            logger.error(
                f"Circuit breaker for {self.provider} OPENED after {failures} failures. "
                f"Will attempt recovery in {self.timeout} seconds."
            )

    def record_success(self) -> None:
        """Record a success and close the circuit after enough HALF_OPEN successes."""
        self.redis.delete(f"{self.circuit_key}:failures")

        if self.get_state() != CircuitState.HALF_OPEN:
            return

        successes_key = f"{self.circuit_key}:successes"
        successes = self.redis.incr(successes_key)
        self.redis.expire(successes_key, self.half_open_timeout)

        if successes >= self.success_threshold:
            self.set_state(CircuitState.CLOSED)
            self.redis.delete(successes_key)
            logger.info(f"Circuit breaker for {self.provider} CLOSED - service recovered")

    def should_attempt_reset(self) -> bool:
        """Whether an OPEN circuit has waited long enough to try HALF_OPEN."""
        if self.get_state() != CircuitState.OPEN:
            return False

        opened_at = self.redis.get(f"{self.circuit_key}:opened_at")
        if opened_at is None:
            return True
        return time.time() - float(opened_at) >= self.timeout

    def allow_request(self) -> bool:
        """
        Gate a request on the circuit state.

        An OPEN circuit past its timeout moves to HALF_OPEN and lets the
        request through as a probe.
        """
        state = self.get_state()
        if state != CircuitState.OPEN:
            return True
        if not self.should_attempt_reset():
            return False

        logger.info(f"Circuit breaker for {self.provider} moving to HALF_OPEN")
        self.set_state(CircuitState.HALF_OPEN)
        self.redis.delete(f"{self.circuit_key}:successes")
        return True

    def get_statistics(self) -> dict:
        opened_at = self.redis.get(f"{self.circuit_key}:opened_at")
        opened_at_ts = float(opened_at) if opened_at else None
        error_types = {
            (k.decode() if isinstance(k, bytes) else k): int(v)
            for k, v in self.redis.hgetall(f"{self.circuit_key}:error_types").items()
        }
        return {
            "provider": self.provider,
            "state": self.get_state().value,
            "failures": int(self.redis.get(f"{self.circuit_key}:failures") or 0),
            "successes": int(self.redis.get(f"{self.circuit_key}:successes") or 0),
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "opened_at": opened_at_ts,
            "error_types": error_types,
        }

    def reset(self) -> None:
        """Reset circuit breaker to CLOSED state (admin/testing)."""
        keys = self.redis.keys(f"{self.circuit_key}:*")
        if keys:
            self.redis.delete(*keys)
        self.set_state(CircuitState.CLOSED)
        logger.info(f"Circuit breaker for {self.provider} manually reset to CLOSED")


_circuit_breakers: Dict[str, ProviderCircuitBreaker] = {}


def get_circuit_breaker(provider: str) -> ProviderCircuitBreaker:
    """Get or create the circuit breaker for a provider."""
    breaker: Optional[ProviderCircuitBreaker] = _circuit_breakers.get(provider)
    if breaker is None:
        breaker = ProviderCircuitBreaker(provider)
        _circuit_breakers[provider] = breaker
    return breaker
