"""Tests for the per-customer duplicate order guard."""

import threading

from core.duplicate_guard import DuplicateGuard


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestDuplicateGuard:

    def test_key_normalises_identity(self):
        assert DuplicateGuard.key(" Alice@Example.com ", "usdc", "BASE") == ("alice@example.com", "USDC", "base")

    def test_second_reservation_is_blocked_with_existing_id(self):
        clock = FakeClock(100.0)
        guard = DuplicateGuard(clock=clock)
        key = guard.key("alice", "TKN", "base")

        assert guard.reserve(key, "ord-1", 1800) is None
        blocking = guard.reserve(key, "ord-2", 1800)

        assert blocking.order_id == "ord-1"
        clock.now = 400.0
        assert blocking.remaining(clock.now) == 1500.0

    def test_expired_reservation_can_be_replaced(self):
        clock = FakeClock()
        guard = DuplicateGuard(clock=clock)
        key = guard.key("alice", "TKN", "base")
        guard.reserve(key, "ord-1", 60)

        clock.now = 61
        assert guard.reserve(key, "ord-2", 60) is None
        assert guard.lookup(key).order_id == "ord-2"

    def test_release_requires_owner(self):
        guard = DuplicateGuard()
        key = guard.key("alice", "TKN", "base")
        guard.reserve(key, "ord-1", 60)

        assert not guard.release(key, "ord-other")
        assert guard.release(key, "ord-1")
        assert guard.lookup(key) is None

    def test_different_token_or_network_is_independent(self):
        guard = DuplicateGuard()

        assert guard.reserve(guard.key("alice", "TKN", "base"), "a", 60) is None
        assert guard.reserve(guard.key("alice", "WETH", "base"), "b", 60) is None
        assert guard.reserve(guard.key("alice", "TKN", "solana"), "c", 60) is None

    def test_concurrent_reservations_admit_exactly_one(self):
        guard = DuplicateGuard()
        key = guard.key("alice", "TKN", "base")
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def worker(i):
            barrier.wait()
            outcome = guard.reserve(key, f"ord-{i}", 60)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is None]
        assert len(winners) == 1
        assert len({r.order_id for r in results if r is not None}) == 1

    def test_purge_expired(self):
        clock = FakeClock()
        guard = DuplicateGuard(clock=clock)
        guard.reserve(guard.key("a", "TKN", "base"), "1", 10)
        guard.reserve(guard.key("b", "TKN", "base"), "2", 100)

        clock.now = 50
        assert guard.purge_expired() == 1
