"""
Pulse Analytics Sync

Rolling 15-month GA4 ingestion engine with per-period locking,
daily-to-monthly compaction and a cache-backed dashboard read path.
"""

__version__ = "1.0.0"
