#!/usr/bin/env python3
"""
Tests for the pending correlation table.

Covers consume-once delivery, TTL expiry (sweep and lazy), overwrite on the
same timestamp, and concurrent takers racing for one entry.

Run with: python tests/test_pending.py (or pytest)
"""

import sys
import threading
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from signal_bridge.pending import DEFAULT_TTL, PendingCorrelationTable
from _runner import run_tests


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# =============================================================================
# Consume-once
# =============================================================================

def test_put_then_take_consumes_once():
    print("\n[TEST] Put then take consumes once...")

    table = PendingCorrelationTable()
    table.put(1000, "what is 2+2")

    assert table.take_if_present({1000}) == "what is 2+2"
    assert 1000 not in table, "Entry should be gone after take"
    assert table.take_if_present({1000}) is None, "Second take must return nothing"
    assert len(table) == 0

    print("  PASS: Entry delivered exactly once")


def test_take_scans_timestamps_in_order():
    """The first acknowledged timestamp present wins; others stay."""
    print("\n[TEST] Take scans timestamps in order...")

    table = PendingCorrelationTable()
    table.put(1000, "first")
    table.put(2000, "second")

    entry = table.take_match([999, 2000, 1000])
    assert entry.timestamp == 2000 and entry.prompt == "second"
    assert 1000 in table, "Only one entry is resolved per take"

    assert table.take_if_present([5, 6, 7]) is None

    print("  PASS: First present timestamp resolved, rest untouched")


def test_put_same_timestamp_overwrites():
    print("\n[TEST] Same timestamp overwrites...")

    table = PendingCorrelationTable()
    table.put(1000, "old")
    table.put(1000, "new")

    assert len(table) == 1, "At most one entry per timestamp"
    assert table.take_if_present([1000]) == "new"

    print("  PASS: Later put replaced the earlier prompt")


# =============================================================================
# TTL
# =============================================================================

def test_sweep_removes_entries_past_ttl():
    print("\n[TEST] Sweep after TTL...")

    clock = FakeClock()
    table = PendingCorrelationTable(ttl=DEFAULT_TTL, clock=clock)
    table.put(1000, "stale")
    clock.advance(100)
    table.put(2000, "fresh")

    clock.advance(DEFAULT_TTL - 100 + 0.001)  # first entry is now TTL + epsilon old
    removed = table.sweep_expired()

    assert removed == 1, f"Expected 1 expired entry, got {removed}"
    assert table.take_if_present([1000]) is None, "Swept entry must not be served"
    assert table.take_if_present([2000]) == "fresh"

    print("  PASS: Only the expired entry was swept")


def test_sweep_with_explicit_now():
    print("\n[TEST] Sweep with explicit now...")

    clock = FakeClock(0.0)
    table = PendingCorrelationTable(ttl=300, clock=clock)
    table.put(1, "a")

    assert table.sweep_expired(now=300) == 0, "Exactly TTL old is still visible"
    assert table.sweep_expired(now=300.5) == 1
    assert len(table) == 0

    print("  PASS: Entries older than TTL are removed")


def test_take_ignores_expired_unswept_entry():
    """An entry past its TTL is invisible even if the sweep has not run yet."""
    print("\n[TEST] Take ignores expired entry...")

    clock = FakeClock()
    table = PendingCorrelationTable(ttl=300, clock=clock)
    table.put(1000, "late")
    clock.advance(301)

    assert table.take_if_present([1000]) is None
    assert len(table) == 0, "Expired entry dropped on lookup"

    print("  PASS: Expired entry not served")


# =============================================================================
# Concurrency
# =============================================================================

def test_concurrent_takes_deliver_once():
    """Many threads racing for the same entries; each is served once."""
    print("\n[TEST] Concurrent takes deliver once...")

    table = PendingCorrelationTable()
    for ts in range(50):
        table.put(ts, f"prompt-{ts}")

    served = []
    served_lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        for ts in range(50):
            prompt = table.take_if_present([ts])
            if prompt is not None:
                with served_lock:
                    served.append(prompt)

    def sweeper():
        barrier.wait()
        for _ in range(50):
            table.sweep_expired()

    threads = [threading.Thread(target=worker) for _ in range(7)]
    threads.append(threading.Thread(target=sweeper))
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(served) == 50, f"Expected 50 deliveries, got {len(served)}"
    assert len(set(served)) == 50, "An entry was served twice"
    assert len(table) == 0

    print("  PASS: 50 entries, 7 takers + 1 sweeper, no double delivery")


def test_clear_discards_everything():
    print("\n[TEST] Clear...")

    table = PendingCorrelationTable()
    table.put(1, "a")
    table.put(2, "b")
    table.clear()

    assert len(table) == 0
    assert table.take_if_present([1, 2]) is None

    print("  PASS: Table emptied")


# =============================================================================
# Main
# =============================================================================

def main():
    """Run all tests."""
    tests = [
        ('Consume once', test_put_then_take_consumes_once),
        ('Timestamp order', test_take_scans_timestamps_in_order),
        ('Overwrite', test_put_same_timestamp_overwrites),
        ('Sweep after TTL', test_sweep_removes_entries_past_ttl),
        ('Sweep explicit now', test_sweep_with_explicit_now),
        ('Lazy expiry', test_take_ignores_expired_unswept_entry),
        ('Concurrent takes', test_concurrent_takes_deliver_once),
        ('Clear', test_clear_discards_everything),
    ]
    return run_tests("Pending Correlation Table Tests", tests)


if __name__ == '__main__':
    sys.exit(main())
