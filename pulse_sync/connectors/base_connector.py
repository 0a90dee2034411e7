"""
Base connector class for analytics providers
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime
import asyncio

from pulse_sync.exceptions import TransientProviderError
from pulse_sync.models.records import Period
from pulse_sync.utils.logger import log
from pulse_sync.utils.retry import RetryStats, calculate_backoff, is_retryable_error

# A report row: {"dimensions": ["20250131"], "metrics": {"sessions": 120.0, ...}}
ReportRow = Dict[str, Any]


class BaseConnector(ABC):
    """Base class for provider connectors: report execution plus retry with backoff"""

    # Retry configuration (can be overridden per instance)
    RETRY_MAX_ATTEMPTS = 5
    RETRY_BASE_DELAY = 2.0  # seconds
    RETRY_MAX_DELAY = 60.0  # seconds

    def __init__(
        self,
        name: str,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ):
        self.name = name
        self.max_attempts = max_attempts or self.RETRY_MAX_ATTEMPTS
        self.base_delay = self.RETRY_BASE_DELAY if base_delay is None else base_delay
        self.max_delay = self.RETRY_MAX_DELAY if max_delay is None else max_delay
        self.last_request = None
        self.request_count = 0
        self.error_count = 0
        self.retry_count = 0  # Total retries across all requests

    @abstractmethod
    async def connect(self) -> bool:
        """Establish connection to the provider"""
        pass

    @abstractmethod
    async def run_report(
        self,
        property_id: str,
        period: Period,
        metric_names: Sequence[str],
        dimensions: Sequence[str] = (),
    ) -> List[ReportRow]:
        """Run a single report request (no retry)"""
        pass

    async def query_metrics(
        self,
        property_id: str,
        period: Period,
        metric_names: Sequence[str],
        dimensions: Sequence[str] = (),
        retry_stats: Optional[RetryStats] = None,
    ) -> List[ReportRow]:
        """
        Run a report with retry on transient failures.

        Authentication and configuration errors propagate on the first
        attempt; transient errors are retried up to ``max_attempts``.
        """
        dims = "/".join(dimensions) or "total"
        rows = await self._retry_operation(
            lambda: self.run_report(property_id, period, metric_names, dimensions),
            operation_name=f"report {period.key} [{dims}]",
            retry_stats=retry_stats,
        )
        self.last_request = datetime.utcnow()
        return rows

    async def validate_connection(self, property_id: str, period: Period) -> bool:
        """Validate the property is reachable with a one-metric report"""
        try:
            await self.run_report(property_id, period, ["sessions"])
            return True
        except Exception as e:
            log.error(f"{self.name} connection validation failed for property {property_id}: {e}")
            return False

    async def _retry_operation(
        self,
        operation,
        operation_name: str = "operation",
        retry_stats: Optional[RetryStats] = None
    ) -> Any:
        """
        Execute an operation with retry logic.

        Args:
            operation: Callable returning a coroutine or a value
            operation_name: Name for logging
            retry_stats: RetryStats to record attempts into (mutated in place)

        Returns:
            Result of the operation
        """
        stats = retry_stats if retry_stats is not None else RetryStats()
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            self.request_count += 1
            try:
                result = operation()
                if asyncio.iscoroutine(result):
                    result = await result

                stats.record_attempt()
                stats.mark_success()
                if attempt > 1:
                    self.retry_count += (attempt - 1)
                    log.info(
                        f"{self.name} {operation_name} succeeded on attempt {attempt} "
                        f"after {stats.total_delay_seconds:.1f}s total delay"
                    )
                return result

            except Exception as e:
                last_error = e
                self.error_count += 1

                if not is_retryable_error(e):
                    stats.record_attempt(error=e)
                    raise

                if attempt >= self.max_attempts:
                    stats.record_attempt(error=e)
                    log.error(f"{self.name} {operation_name} failed after {attempt} attempts: {e}")
                    if isinstance(e, TransientProviderError):
                        raise
                    raise TransientProviderError(
                        f"{operation_name} failed after {attempt} attempts: {e}"
                    ) from e

                delay = calculate_backoff(
                    attempt,
                    base_delay=self.base_delay,
                    max_delay=self.max_delay
                )
                stats.record_attempt(error=e, delay=delay, retrying=True)

                log.warning(
                    f"{self.name} {operation_name} attempt {attempt} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )

                await asyncio.sleep(delay)

        # Should not reach here
        raise last_error if last_error else RuntimeError("Retry exhausted")

    def get_status(self) -> Dict[str, Any]:
        """Get connector status"""
        return {
            "name": self.name,
            "last_request": self.last_request,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "retry_config": {
                "max_attempts": self.max_attempts,
                "base_delay": self.base_delay,
                "max_delay": self.max_delay
            }
        }
