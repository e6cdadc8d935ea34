"""Per-date mutual exclusion.

All mutations of one calendar date's tokens and session run under that
date's lock, so token numbers stay dense and at most one token is called at
a time.  Waiting for the lock is bounded; on timeout the caller gets a
retryable ``ConcurrencyConflict`` instead of queueing forever.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterator

from .errors import ConcurrencyConflict

logger = logging.getLogger(__name__)


class DateLocks:
    def __init__(self, timeout: float = 2.0) -> None:
        self.timeout = timeout
        self._locks: Dict[date, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, day: date) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(day)
            if lock is None:
                lock = self._locks[day] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, day: date) -> Iterator[None]:
        deadline = time.monotonic() + self.timeout
        while True:
            lock = self._lock_for(day)
            if not lock.acquire(timeout=max(deadline - time.monotonic(), 0)):
                logger.warning("Lock contention on %s after %.1fs", day, self.timeout)
                raise ConcurrencyConflict(
                    f"Queue for {day.isoformat()} is busy, please retry",
                    date=day.isoformat(),
                )
            with self._guard:
                current = self._locks.get(day) is lock
            if current:
                break
            # pruned while we waited for it
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def prune(self, before: date) -> int:
        """Forget locks of dates before ``before`` that nobody holds."""
        with self._guard:
            stale = [d for d, lock in self._locks.items() if d < before and not lock.locked()]
            for d in stale:
                del self._locks[d]
        return len(stale)
