"""In-process exclusive locks keyed by (entity_type, entity_id).

Held for the duration of a state transition. Row locks (``SELECT ... FOR
UPDATE``) and the ``version`` columns cover writers in other processes.
"""
import threading
from contextlib import contextmanager
from typing import Hashable

_registry_lock = threading.Lock()
_locks: dict[tuple[str, Hashable], threading.Lock] = {}


def _lock_for(entity_type: str, entity_id: Hashable) -> threading.Lock:
    key = (entity_type, entity_id)
    with _registry_lock:
        lock = _locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _locks[key] = lock
        return lock


@contextmanager
def entity_lock(entity_type: str, entity_id: Hashable):
    lock = _lock_for(entity_type, entity_id)
    with lock:
        yield
