import threading
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator


class KeyedLocks:
    """One lock per key, created on first use. Keys are locked in sorted order."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield

    def discard(self, key: str) -> None:
        with self._guard:
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


budget_locks = KeyedLocks()
