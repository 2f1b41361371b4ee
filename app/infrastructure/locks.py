"""
In-process per-user locks for batch jobs (reconciliation, backfill).

Cross-process exclusion comes from the user-row lock taken inside each
transaction (RunMaintenanceEngine.lock_user); these locks only keep threads
of one process from queueing on the database for the same user.
"""
import threading
from contextlib import contextmanager
from typing import Iterator


class UserLockRegistry:
    """A lock exists only while someone holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}
        self._holders: dict[int, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, user_id: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(user_id, threading.Lock())
            self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._holders[user_id] -= 1
                if not self._holders[user_id]:
                    del self._holders[user_id]
                    del self._locks[user_id]
