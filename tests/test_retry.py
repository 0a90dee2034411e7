"""
Backoff and retry classification
"""
import pytest

from pulse_sync.exceptions import ConfigurationError, ProviderAuthError, TransientProviderError
from pulse_sync.utils.retry import RetryStats, calculate_backoff, is_retryable_error


def test_backoff_grows_and_caps_without_jitter():
    delays = [calculate_backoff(n, base_delay=1.0, max_delay=5.0, jitter=False) for n in range(1, 6)]
    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_jitter_adds_at_most_a_quarter():
    for _ in range(50):
        delay = calculate_backoff(3, base_delay=1.0, max_delay=60.0)
        assert 4.0 <= delay <= 5.0


@pytest.mark.parametrize("error", [
    ProviderAuthError("invalid_grant"),
    ConfigurationError("no property"),
    TransientProviderError("bad request", status_code=400),
])
def test_not_retryable(error):
    assert is_retryable_error(error) is False


@pytest.mark.parametrize("error", [
    TransientProviderError("quota", status_code=429),
    TransientProviderError("upstream"),
    ConnectionError("reset by peer"),
    RuntimeError("Deadline exceeded: request timed out"),
    RuntimeError("HTTP 503 from backend"),
])
def test_retryable(error):
    assert is_retryable_error(error) is True


def test_retry_stats_counts_retries():
    stats = RetryStats()
    stats.record_attempt(TransientProviderError("slow"), delay=1.5, retrying=True)
    stats.record_attempt()
    stats.mark_success()

    assert stats.attempts == 2
    assert stats.retries == 1
    assert stats.total_delay_seconds == 1.5
    assert stats.last_error == "TransientProviderError: slow"
    assert stats.success is True
