"""
Fetch lock tests.

Guards against:
1. Two runs fetching the same client/period at once
2. A crashed holder blocking a period forever
3. release() of an unknown key raising
"""
import threading

from pulse_sync.models.records import Period
from pulse_sync.utils.locks import LockManager, lock_key


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_lock_key_accepts_period_or_string():
    assert lock_key("acme", Period(2025, 3)) == "acme:2025-03"
    assert lock_key("acme", "2025-03") == "acme:2025-03"


def test_acquire_is_exclusive_until_release():
    locks = LockManager(default_ttl=60)
    assert locks.acquire("acme:2025-03") is True
    assert locks.acquire("acme:2025-03") is False
    locks.release("acme:2025-03")
    assert locks.acquire("acme:2025-03") is True


def test_keys_are_independent():
    locks = LockManager()
    assert locks.acquire("acme:2025-03")
    assert locks.acquire("acme:2025-04")
    assert locks.acquire("globex:2025-03")
    assert sorted(locks.active_keys()) == ["acme:2025-03", "acme:2025-04", "globex:2025-03"]


def test_release_of_absent_key_is_noop():
    locks = LockManager()
    locks.release("never-taken")
    assert len(locks) == 0


def test_expired_entry_is_evicted_on_next_acquire():
    clock = FakeClock()
    locks = LockManager(default_ttl=300, clock=clock)
    assert locks.acquire("acme:2025-03")

    clock.now += 300  # exactly at TTL is still held
    assert locks.acquire("acme:2025-03") is False

    clock.now += 0.5
    assert locks.is_locked("acme:2025-03") is False
    assert locks.acquire("acme:2025-03") is True
    assert len(locks) == 1


def test_per_call_ttl_overrides_default():
    clock = FakeClock()
    locks = LockManager(default_ttl=300, clock=clock)
    locks.acquire("acme:2025-03", ttl=5)
    clock.now += 6
    assert locks.acquire("acme:2025-03") is True


def test_freed_slots_are_reused():
    locks = LockManager()
    for i in range(5):
        locks.acquire(f"k{i}")
    for i in range(5):
        locks.release(f"k{i}")
    for i in range(5):
        locks.acquire(f"j{i}")
    assert len(locks._slots) == 5


def test_held_releases_on_exit_and_on_error():
    locks = LockManager()
    with locks.held("acme:2025-03") as acquired:
        assert acquired
        assert locks.is_locked("acme:2025-03")
    assert not locks.is_locked("acme:2025-03")

    try:
        with locks.held("acme:2025-03"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert not locks.is_locked("acme:2025-03")


def test_held_does_not_release_someone_elses_lock():
    locks = LockManager()
    locks.acquire("acme:2025-03")
    with locks.held("acme:2025-03") as acquired:
        assert acquired is False
    assert locks.is_locked("acme:2025-03")


def test_only_one_thread_wins():
    locks = LockManager()
    winners = []
    barrier = threading.Barrier(8)

    def worker(n):
        barrier.wait()
        if locks.acquire("acme:2025-03"):
            winners.append(n)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
