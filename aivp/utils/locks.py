"""
Per-entity in-process locks.
Serializes operations on the same participant or session while leaving
unrelated keys fully concurrent.
"""

import threading
from contextlib import contextmanager
from typing import Generator, Hashable


class KeyedLock:
    """Reference-counted lock per key; idle keys are released."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Generator[None, None, None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Shared by every component that mutates a participant or a session
participant_locks = KeyedLock()
session_locks = KeyedLock()
