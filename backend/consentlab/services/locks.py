# SPDX-License-Identifier: Apache-2.0
"""Per-study write serialization for audit-chain appends and version numbering."""
from __future__ import annotations

import threading
from contextlib import contextmanager

_registry_lock = threading.Lock()
_study_locks: dict[int, threading.RLock] = {}


def _lock_for(study_id: int) -> threading.RLock:
    with _registry_lock:
        lock = _study_locks.get(study_id)
        if lock is None:
            lock = threading.RLock()
            _study_locks[study_id] = lock
        return lock


@contextmanager
def study_write_guard(study_id: int):
    """Hold the study's lock for a whole read-modify-write-commit unit.

    Re-entrant, so a service holding the guard may call another that takes it.
    Cross-process races are caught by the unique constraints on audit_log(study_id, seq)
    and consents(study_id, participant_id, version).
    """
    lock = _lock_for(study_id)
    with lock:
        yield


def forget_study(study_id: int) -> None:
    """Drop the lock of a deleted study."""
    with _registry_lock:
        _study_locks.pop(study_id, None)
