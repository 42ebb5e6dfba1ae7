"""Tests for common.py - retry policy and formatting helpers."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import RetryPolicy, call_with_retry, format_duration


class Transient(Exception):
    pass


def _retryable(e):
    return isinstance(e, Transient)


class TestRetryPolicy:
    """Test backoff delay computation."""

    def test_exponential(self):
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=30.0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0)
        assert policy.delay(3) == 15.0


class TestCallWithRetry:
    """Test call_with_retry behavior."""

    def test_returns_first_success(self):
        sleep = MagicMock()
        assert call_with_retry(lambda: 'ok', RetryPolicy(), _retryable, sleep=sleep) == 'ok'
        sleep.assert_not_called()

    def test_retries_then_succeeds(self):
        fn = MagicMock(side_effect=[Transient('busy'), Transient('busy'), 'ok'])
        sleep = MagicMock()
        result = call_with_retry(fn, RetryPolicy(max_attempts=3, base_delay=0.5), _retryable, sleep=sleep)
        assert result == 'ok'
        assert fn.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_exhausted_attempts_raise_last_error(self):
        fn = MagicMock(side_effect=[Transient('one'), Transient('two')])
        with pytest.raises(Transient, match='two'):
            call_with_retry(fn, RetryPolicy(max_attempts=2), _retryable, sleep=MagicMock())
        assert fn.call_count == 2

    def test_non_retryable_raises_immediately(self):
        fn = MagicMock(side_effect=ValueError('bad'))
        sleep = MagicMock()
        with pytest.raises(ValueError):
            call_with_retry(fn, RetryPolicy(max_attempts=5), _retryable, sleep=sleep)
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_single_attempt_policy(self):
        fn = MagicMock(side_effect=Transient('busy'))
        with pytest.raises(Transient):
            call_with_retry(fn, RetryPolicy(max_attempts=1), _retryable, sleep=MagicMock())
        assert fn.call_count == 1


class TestFormatDuration:
    """Test duration rendering."""

    @pytest.mark.parametrize('seconds,expected', [
        (0.0, '0.0s'),
        (3.24, '3.2s'),
        (59.9, '59.9s'),
        (65, '1m 05s'),
        (600, '10m 00s'),
    ])
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected
