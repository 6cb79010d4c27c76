"""
Per-Loan Locking

Serializes mutations of a single loan id inside the process. Waiters are
served in arrival order, so two payments for the same loan apply in the
order they arrived. Different loan ids never contend. Waiting is bounded:
a caller that cannot get the lock within its timeout gets a BusyError.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Optional, Set

from .errors import BusyError


class _FairLock:
    """Ticket lock: first come, first served, with a bounded wait"""

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._next_ticket = 0
        self._now_serving = 0
        self._abandoned: Set[int] = set()
        self.users = 0  # Holders plus waiters; guarded by the manager's registry lock

    def _skip_abandoned(self) -> None:
        while self._now_serving in self._abandoned:
            self._abandoned.discard(self._now_serving)
            self._now_serving += 1

    def acquire(self, timeout: Optional[float]) -> bool:
        with self._condition:
            ticket = self._next_ticket
            self._next_ticket += 1
            acquired = self._condition.wait_for(lambda: self._now_serving == ticket, timeout)
            if not acquired:
                # Give up our place; wake whoever is next in line
                self._abandoned.add(ticket)
                self._skip_abandoned()
                self._condition.notify_all()
            return acquired

    def release(self) -> None:
        with self._condition:
            self._now_serving += 1
            self._skip_abandoned()
            self._condition.notify_all()

    @property
    def locked(self) -> bool:
        with self._condition:
            return self._now_serving < self._next_ticket


class LoanLockManager:
    """Registry of per-loan-id locks"""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, _FairLock] = {}

    def _checkout(self, loan_id: str) -> _FairLock:
        with self._registry_lock:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = self._locks[loan_id] = _FairLock()
            lock.users += 1
            return lock

    def _checkin(self, loan_id: str, lock: _FairLock) -> None:
        with self._registry_lock:
            lock.users -= 1
            if lock.users == 0:
                del self._locks[loan_id]

    @contextmanager
    def hold(self, loan_id: str, timeout: Optional[float] = None):
        """Exclusive access to one loan id for the duration of the block"""
        wait = self.timeout if timeout is None else timeout
        lock = self._checkout(loan_id)
        try:
            if not lock.acquire(wait):
                raise BusyError(loan_id, wait)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(loan_id, lock)

    def is_locked(self, loan_id: str) -> bool:
        with self._registry_lock:
            lock = self._locks.get(loan_id)
        return lock is not None and lock.locked

    def active_count(self) -> int:
        """Loan ids currently held or waited on"""
        with self._registry_lock:
            return len(self._locks)
