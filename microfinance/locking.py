"""
Per-Loan Locking Module

Every read-modify-write of a loan's ledger and schedule runs while holding
that loan's lock. Different loans never share a lock.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .exceptions import ConcurrencyConflictError


class LoanLockRegistry:
    """Hands out one re-entrant lock per loan id"""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, loan_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
            return lock

    @contextmanager
    def hold(self, loan_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold the loan's lock for the duration of the block.

        Raises:
            ConcurrencyConflictError: if the lock is not acquired within the timeout
        """
        wait = self.timeout_seconds if timeout is None else timeout
        lock = self._lock_for(loan_id)
        if not lock.acquire(timeout=wait):
            raise ConcurrencyConflictError(
                f"Loan {loan_id} is busy: lock not acquired within {wait}s"
            )
        try:
            yield
        finally:
            lock.release()

    def discard(self, loan_id: str) -> None:
        """Forget the lock of a deleted loan"""
        with self._registry_lock:
            self._locks.pop(loan_id, None)
