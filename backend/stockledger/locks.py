import threading
import time
import weakref
from contextlib import contextmanager
from typing import Hashable, Iterable

from .errors import DeadlineExceededError


class RecordLocks:
    """Per-key mutexes for stock records held by this process.

    Keys are always taken in sorted order so multi-record operations cannot
    deadlock each other. A lock lives only while somebody holds a reference
    to it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(
        self,
        keys: Iterable[Hashable],
        deadline: float | None = None,
        operation: str = "lock",
        timeout: float | None = None,
    ):
        ordered = sorted(set(keys))
        acquired: list[threading.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                if deadline is None:
                    lock.acquire()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0 or not lock.acquire(timeout=remaining):
                        raise DeadlineExceededError(operation, timeout)
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
