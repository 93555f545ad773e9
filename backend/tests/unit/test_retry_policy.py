"""
Unit tests for RetryPolicy.
"""

from unittest.mock import MagicMock

import pytest

from studybuddy.core.exceptions import PaymentProcessorException
from studybuddy.core.retry import RetryPolicy


def _transient(message="network down"):
    return PaymentProcessorException(message, operation="test", transient=True)


def _permanent(message="card declined"):
    return PaymentProcessorException(message, operation="test", transient=False)


def _policy(sleep, max_attempts=3):
    return RetryPolicy(
        max_attempts=max_attempts,
        backoff_seconds=(0.5, 1.0),
        retry_if=lambda exc: getattr(exc, "transient", False),
        sleep=sleep,
    )


class TestRetryPolicy:
    """Retries only what the predicate allows."""

    def test_returns_first_success(self):
        func = MagicMock(return_value="ok")
        assert _policy(MagicMock()).call(func, operation="op") == "ok"
        assert func.call_count == 1

    def test_retries_transient_then_succeeds(self):
        sleep = MagicMock()
        func = MagicMock(side_effect=[_transient(), _transient(), "ok"])

        assert _policy(sleep).call(func, operation="op") == "ok"
        assert func.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_permanent_error_is_not_retried(self):
        func = MagicMock(side_effect=_permanent())
        with pytest.raises(PaymentProcessorException):
            _policy(MagicMock()).call(func, operation="op")
        assert func.call_count == 1

    def test_gives_up_after_max_attempts(self):
        func = MagicMock(side_effect=_transient())
        with pytest.raises(PaymentProcessorException):
            _policy(MagicMock(), max_attempts=2).call(func, operation="op")
        assert func.call_count == 2

    def test_last_backoff_repeats(self):
        policy = _policy(MagicMock())
        assert policy.delay_for(1) == 0.5
        assert policy.delay_for(5) == 1.0

    def test_no_retry(self):
        func = MagicMock(side_effect=_transient())
        with pytest.raises(PaymentProcessorException):
            RetryPolicy.no_retry().call(func, operation="op")
        assert func.call_count == 1

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(backoff_seconds=(-1.0,))
