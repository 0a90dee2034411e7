"""
Backoff helpers shared by the provider connectors and the job queue.

Retry loops themselves live with their callers (BaseConnector for
provider reports, BackgroundJobQueue for jobs); this module only decides
how long to wait and whether an error is worth another attempt.
"""
import random
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Type

from pulse_sync.exceptions import FATAL_ERRORS, TransientProviderError

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

# Raised by the network stack below the provider client
RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    TransientProviderError,
    ConnectionError,
    TimeoutError,
)


@dataclass
class RetryStats:
    """Attempts, retries and delays; one instance may be shared by several requests."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False
    retries: int = 0

    def record_attempt(self, error: Optional[Exception] = None, delay: float = 0.0, retrying: bool = False):
        self.attempts += 1
        if retrying:
            self.retries += 1
        self.total_delay_seconds += delay
        if error:
            error_str = f"{type(error).__name__}: {error}"
            self.last_error = error_str
            self.errors.append(error_str)

    def mark_success(self):
        self.success = True


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Delay before the next attempt.

    Args:
        attempt: Attempt that just failed (1-indexed)
        base_delay: Delay after the first failure
        max_delay: Cap applied before jitter
        exponential_base: Growth factor per attempt
        jitter: Add 0-25% so parallel periods do not retry in lockstep

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base ** (attempt - 1)), max_delay)
    if jitter:
        delay += delay * random.uniform(0, 0.25)
    return delay


def is_retryable_error(error: Exception) -> bool:
    """
    Whether another attempt could succeed.

    Authentication and configuration errors never are: a bad credential
    cannot start working and only burns provider quota.
    """
    if isinstance(error, FATAL_ERRORS):
        return False

    if isinstance(error, TransientProviderError):
        return error.status_code is None or error.status_code in RETRYABLE_STATUS_CODES

    if isinstance(error, RETRYABLE_EXCEPTIONS):
        return True

    # Untyped errors from lower layers: fall back to the message
    error_str = str(error).lower()
    if "rate limit" in error_str or "too many requests" in error_str:
        return True
    if any(str(code) in error_str for code in RETRYABLE_STATUS_CODES):
        return True
    return "timeout" in error_str or "timed out" in error_str
