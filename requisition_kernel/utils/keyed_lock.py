"""
In-process mutual exclusion keyed by entity id.

Two threads of the same worker process acting on one requisition are
serialized here before either touches the store.  Cross-process exclusion
comes from the row lock and the version compare-and-swap in
``DocumentStore``; this lock only removes the cheap in-process interleaving.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLock:
    """A lazily populated registry of one ``threading.Lock`` per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
