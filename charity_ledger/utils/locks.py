"""In-process keyed locks."""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, List

class KeyedLocks:
    """
    One re-entrant lock per key, created on demand and dropped once no
    thread holds or waits for it.

    Serializes writers on the same key inside one process. Database row
    locks still do the work across processes; this covers backends such
    as SQLite that ignore SELECT ... FOR UPDATE.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders + waiters]
        self._locks: Dict[Hashable, List] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Hashable):
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable):
        lock = self._checkout(key)
        try:
            lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)
