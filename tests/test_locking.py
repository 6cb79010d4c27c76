"""
Tests for per-loan locking
"""

import threading
import time
import pytest

from agriledger.errors import BusyError
from agriledger.locking import LoanLockManager


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


class TestLoanLockManager:
    """Test mutual exclusion, fairness and bounded waits"""

    def setup_method(self):
        self.manager = LoanLockManager(timeout=5.0)

    def test_hold_and_release(self):
        with self.manager.hold("L1"):
            assert self.manager.is_locked("L1")
            assert self.manager.active_count() == 1
        assert not self.manager.is_locked("L1")
        assert self.manager.active_count() == 0

    def test_timeout_raises_busy(self):
        with self.manager.hold("L1"):
            with pytest.raises(BusyError) as exc_info:
                with self.manager.hold("L1", timeout=0.05):
                    pass
        assert exc_info.value.retryable
        assert exc_info.value.resource_id == "L1"

        # The abandoned wait does not block later holders
        with self.manager.hold("L1", timeout=0.5):
            pass
        assert self.manager.active_count() == 0

    def test_different_loans_do_not_contend(self):
        with self.manager.hold("L1"):
            with self.manager.hold("L2", timeout=0.05):
                assert self.manager.is_locked("L2")
            assert self.manager.active_count() == 1

    def test_waiters_served_in_arrival_order(self):
        order = []
        threads = []

        with self.manager.hold("L1"):
            lock = self.manager._locks["L1"]
            for i in range(5):
                def worker(n=i):
                    with self.manager.hold("L1"):
                        order.append(n)
                thread = threading.Thread(target=worker)
                thread.start()
                threads.append(thread)
                # Next thread starts only once this one holds its ticket
                wait_until(lambda expected=i + 2: lock._next_ticket == expected)

        for thread in threads:
            thread.join(timeout=5)

        assert order == [0, 1, 2, 3, 4]
        assert self.manager.active_count() == 0

    def test_mutual_exclusion_under_contention(self):
        inside = []
        overlaps = []

        def worker():
            for _ in range(20):
                with self.manager.hold("L1"):
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(True)
                    time.sleep(0.0005)
                    inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert overlaps == []
        assert self.manager.active_count() == 0
