#!/usr/bin/env python3
"""
Cross-process locking for digest runs
Uses the filelock library so the web app, scheduler and CLI never assemble
the same user's digest concurrently
"""
import os
import hashlib
from contextlib import contextmanager

from filelock import FileLock, Timeout


class LockBusyError(RuntimeError):
    """Raised when a lock is already held elsewhere"""


def lock_path_for(name: str, lock_dir: str = 'data/locks') -> str:
    """Stable lock file path for an arbitrary key (e.g. an email address)"""
    os.makedirs(lock_dir, exist_ok=True)
    digest = hashlib.sha256(name.encode('utf-8')).hexdigest()[:16]
    return os.path.join(lock_dir, f"{digest}.lock")


@contextmanager
def exclusive_lock(name: str, timeout: float = 10, lock_dir: str = 'data/locks'):
    """
    Context manager holding an exclusive lock for ``name``

    Usage:
        with exclusive_lock(f"digest:{email}"):
            ...

    Raises:
        LockBusyError: If the lock cannot be acquired within timeout
    """
    lock = FileLock(lock_path_for(name, lock_dir), timeout=timeout)

    try:
        lock.acquire()
    except Timeout:
        raise LockBusyError(f"Could not acquire lock on {name} after {timeout}s")

    try:
        yield
    finally:
        lock.release()
