from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from src.common.errors import ConflictError


class NameLocks:
    """Advisory per-namespace locks serialising mutating operations in-process."""

    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self.timeout_seconds = timeout_seconds
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(name, threading.Lock())
        if not lock.acquire(timeout=self.timeout_seconds):
            raise ConflictError(f"another operation on {name} is still in progress")
        try:
            yield
        finally:
            lock.release()

    def locked(self, name: str) -> bool:
        with self._guard:
            lock = self._locks.get(name)
        return lock is not None and lock.locked()


__all__ = ["NameLocks"]
