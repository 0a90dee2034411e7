"""
Configuration management for the Pulse analytics sync engine
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Pulse Analytics Sync"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"  # Empty = console logging only
    timezone: str = "UTC"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./pulse_sync.db"

    # Google Analytics 4
    ga4_credentials_path: str = "./credentials/ga4-credentials.json"
    ga4_data_delay_days: int = 2  # GA4 processing delay (24-48h)
    ga4_credentials_json: str = ""  # Raw service-account JSON, written to ga4_credentials_path at startup
    google_sa_json: str = ""  # Shared service account fallback

    # Period planning
    history_months: int = 15  # Rolling window, current month included
    daily_retention_months: int = 2  # Current + previous month kept at daily resolution
    mutable_window_months: int = 2  # Trailing months re-fetched even when data exists

    # Locking
    lock_ttl_seconds: float = 300.0

    # Fetch retry
    max_fetch_attempts: int = 5
    fetch_retry_base_delay: float = 2.0  # seconds
    fetch_retry_max_delay: float = 60.0  # seconds
    period_fan_out: int = 5  # Concurrent period fetches per sync run

    # Query cache
    cache_ttl_seconds: float = 30.0
    cache_max_entries: int = 500

    # Background jobs
    max_concurrent_jobs: int = 3
    max_queue_size: int = 100
    job_max_attempts: int = 3
    job_retry_base_delay: float = 2.0  # seconds
    job_retry_max_delay: float = 120.0  # seconds
    job_retry_every: int = 5  # Take a ready retry after this many new-job dispatches

    # Sync Schedules
    sync_ga4_schedule: str = "0 2 * * *"
    compaction_schedule: str = "30 3 * * *"
    enable_scheduler: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False
        frozen = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
