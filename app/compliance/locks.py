"""
ColdTrack Compliance: Per-Owner Locks

Serializes read-modify-write sequences on one owner (a checklist or a window
monitor) while letting different owners proceed in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Tuple

_registry: Dict[Tuple[str, int], threading.Lock] = {}
_registry_lock = threading.Lock()


def _lock_for(kind: str, owner_id: int) -> threading.Lock:
    key = (str(getattr(kind, "value", kind)), int(owner_id))
    with _registry_lock:
        lock = _registry.get(key)
        if lock is None:
            lock = threading.Lock()
            _registry[key] = lock
        return lock


@contextmanager
def owner_lock(kind, owner_id: int):
    lock = _lock_for(kind, owner_id)
    with lock:
        yield
