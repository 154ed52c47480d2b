"""Per-entity mutual exclusion for mutating workflow operations."""
import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class EntityLockRegistry:
    """
    Hands out one lock per entity id.

    Operations on the same entity serialize; different entities never contend
    beyond the short registry lookup.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, entity_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(entity_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[entity_id] = lock
            return lock

    @contextmanager
    def hold(self, entity_id: str) -> Iterator[None]:
        lock = self._lock_for(entity_id)
        with lock:
            yield


# Shared across all engine instances in the process
entity_locks = EntityLockRegistry()
