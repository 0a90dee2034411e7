"""In-memory fetch locks keyed by (client, period).

Acquire never blocks: a held, unexpired key makes acquire() return False
and the caller skips that unit of work. Entries carry their own TTL so a
holder that crashed without releasing stops blocking others once the TTL
passes. Expiry is checked lazily on the next acquire for the same key.

Usage:
    from pulse_sync.utils.locks import LockManager, lock_key

    locks = LockManager(default_ttl=300)
    key = lock_key(client_id, period)
    if locks.acquire(key):
        try:
            ...
        finally:
            locks.release(key)
"""
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from pulse_sync.utils.logger import log


@dataclass
class LockEntry:
    key: str
    acquired_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.acquired_at > self.ttl


def lock_key(client_id: str, period) -> str:
    """Build the lock key for a client/period pair. Accepts a Period or a period key string."""
    period_key = period if isinstance(period, str) else period.key
    return f"{client_id}:{period_key}"


class LockManager:
    """Thread-safe registry of non-blocking, TTL-bounded locks.

    Entries live in a slot arena; ``_index`` maps a key to its slot and
    freed slots are reused.
    """

    def __init__(self, default_ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._mutex = threading.Lock()
        self._slots: List[Optional[LockEntry]] = []
        self._index: Dict[str, int] = {}
        self._free: List[int] = []

    def acquire(self, key: str, ttl: Optional[float] = None) -> bool:
        """Try to take ``key``. Returns False immediately if it is held and unexpired."""
        ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        with self._mutex:
            slot = self._index.get(key)
            if slot is not None:
                entry = self._slots[slot]
                if not entry.is_expired(now):
                    return False
                log.warning(f"Evicting expired lock {key} (held {now - entry.acquired_at:.1f}s, ttl {entry.ttl}s)")
                self._remove_slot(key, slot)

            entry = LockEntry(key=key, acquired_at=now, ttl=ttl)
            if self._free:
                slot = self._free.pop()
                self._slots[slot] = entry
            else:
                slot = len(self._slots)
                self._slots.append(entry)
            self._index[key] = slot
            return True

    def release(self, key: str) -> None:
        """Release ``key``. No-op when absent (e.g. already expired and re-taken)."""
        with self._mutex:
            slot = self._index.get(key)
            if slot is not None:
                self._remove_slot(key, slot)

    def is_locked(self, key: str) -> bool:
        now = self._clock()
        with self._mutex:
            slot = self._index.get(key)
            return slot is not None and not self._slots[slot].is_expired(now)

    def active_keys(self) -> List[str]:
        """Snapshot of keys currently held and unexpired."""
        now = self._clock()
        with self._mutex:
            return [
                key for key, slot in self._index.items()
                if not self._slots[slot].is_expired(now)
            ]

    @contextmanager
    def held(self, key: str, ttl: Optional[float] = None):
        """Context manager yielding whether the lock was taken; releases on exit if it was."""
        acquired = self.acquire(key, ttl)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)

    def __len__(self) -> int:
        with self._mutex:
            return len(self._index)

    def _remove_slot(self, key: str, slot: int) -> None:
        # caller holds _mutex
        del self._index[key]
        self._slots[slot] = None
        self._free.append(slot)
