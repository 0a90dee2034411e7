"""
Error taxonomy for the sync engine

Contention (a held lock) is not an error and has no exception type.
"""


class PulseSyncError(Exception):
    """Base class for all engine errors"""


class ProviderAuthError(PulseSyncError):
    """Analytics provider rejected the credentials. Fatal for the run, never retried."""


class ConfigurationError(PulseSyncError):
    """Client or engine is misconfigured (e.g. no GA4 property). Fatal for the run."""


class TransientProviderError(PulseSyncError):
    """Rate limit, timeout or 5xx from the provider. Retried with backoff."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class StorageError(PulseSyncError):
    """A read or write against the metric store failed."""


class QueueFullError(PulseSyncError):
    """Background job queue is at capacity."""


FATAL_ERRORS = (ProviderAuthError, ConfigurationError)
