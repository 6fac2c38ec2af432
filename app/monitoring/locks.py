"""
Per-entity mutual exclusion for snapshot read-diff-write cycles.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class EntityLockRegistry:
    """
    Hands out one lock per entity id; entries are dropped when no holder remains.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, entity_id: str) -> Iterator[None]:
        with self._guard:
            lock, refs = self._locks.get(entity_id, (threading.Lock(), 0))
            self._locks[entity_id] = (lock, refs + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, refs = self._locks[entity_id]
                if refs <= 1:
                    del self._locks[entity_id]
                else:
                    self._locks[entity_id] = (lock, refs - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
