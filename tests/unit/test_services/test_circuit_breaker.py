"""
Unit tests for the provider circuit breaker.
"""
import time
from unittest.mock import patch

import pytest

from market_sync.services.circuit_breaker import CircuitState, ProviderCircuitBreaker


def _redis_values(mock_redis, values):
    mock_redis.get.side_effect = lambda key: values.get(key)


@pytest.fixture
def breaker(mock_redis):
    with patch("market_sync.services.circuit_breaker.get_redis_sync", return_value=mock_redis):
        yield ProviderCircuitBreaker("stockx", failure_threshold=3, timeout=60)


def test_closed_by_default(breaker):
    assert breaker.get_state() == CircuitState.CLOSED
    assert breaker.allow_request() is True


def test_opens_at_failure_threshold(breaker, mock_redis):
    mock_redis.incr.return_value = 3

    breaker.record_failure("api_error")

    mock_redis.setex.assert_any_call("circuit_breaker:stockx:state", 120, "OPEN")
    mock_redis.hincrby.assert_called_once_with("circuit_breaker:stockx:error_types", "api_error", 1)


def test_stays_closed_below_threshold(breaker, mock_redis):
    mock_redis.incr.return_value = 2

    breaker.record_failure("timeout")

    mock_redis.setex.assert_not_called()


def test_open_circuit_rejects_until_timeout(breaker, mock_redis):
    _redis_values(mock_redis, {
        "circuit_breaker:stockx:state": b"OPEN",
        "circuit_breaker:stockx:opened_at": str(time.time()),
    })

    assert breaker.allow_request() is False


def test_open_circuit_moves_to_half_open_after_timeout(breaker, mock_redis):
    _redis_values(mock_redis, {
        "circuit_breaker:stockx:state": "OPEN",
        "circuit_breaker:stockx:opened_at": str(time.time() - 120),
    })

    assert breaker.allow_request() is True
    mock_redis.setex.assert_called_once_with("circuit_breaker:stockx:state", 120, "HALF_OPEN")
    mock_redis.delete.assert_called_once_with("circuit_breaker:stockx:successes")


def test_half_open_closes_after_successes(breaker, mock_redis):
    _redis_values(mock_redis, {"circuit_breaker:stockx:state": "HALF_OPEN"})
    mock_redis.incr.return_value = 2

    breaker.record_success()

    mock_redis.setex.assert_called_once_with("circuit_breaker:stockx:state", 120, "CLOSED")


def test_success_when_closed_only_clears_failures(breaker, mock_redis):
    breaker.record_success()

    mock_redis.delete.assert_called_once_with("circuit_breaker:stockx:failures")
    mock_redis.incr.assert_not_called()


def test_statistics(breaker, mock_redis):
    _redis_values(mock_redis, {"circuit_breaker:stockx:failures": "2"})
    mock_redis.hgetall.return_value = {b"timeout": b"2"}

    stats = breaker.get_statistics()

    assert stats["state"] == "CLOSED"
    assert stats["failures"] == 2
    assert stats["error_types"] == {"timeout": 2}
    assert stats["opened_at"] is None
