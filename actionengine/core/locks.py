"""
Process-wide per-SKU mutual exclusion.
Two actions touching the same SKU never capture, persist and mutate concurrently,
whichever batch or request they come from.
"""

import threading
import time
from typing import Dict, Iterable, List, Optional


class SKULockRegistry:
    """Hands out one lock per SKU. Multi-SKU callers acquire in sorted order."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, sku: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(sku)
            if lock is None:
                lock = threading.Lock()
                self._locks[sku] = lock
            return lock

    def acquire(self, skus: Iterable[str], timeout: Optional[float] = None) -> Optional[List[threading.Lock]]:
        """
        Acquire the locks for every SKU, sorted to avoid lock-order inversion.
        Returns the held locks, or None (holding nothing) if `timeout` ran out.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        held: List[threading.Lock] = []
        for sku in sorted(set(skus)):
            lock = self._lock_for(sku)
            if deadline is None:
                acquired = lock.acquire()
            else:
                acquired = lock.acquire(timeout=max(deadline - time.monotonic(), 0))
            if not acquired:
                self.release(held)
                return None
            held.append(lock)
        return held

    def release(self, locks: List[threading.Lock]) -> None:
        for lock in reversed(locks):
            lock.release()

    def is_locked(self, sku: str) -> bool:
        return self._lock_for(sku).locked()


# Shared by every executor and rollback manager in the process
sku_locks = SKULockRegistry()
