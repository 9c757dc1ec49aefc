"""In-process per-receipt locks"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List

from homecare_billing.domain.exceptions import RecalculationFailedError


class KeyedLockRegistry:
    """
    One lock per key, alive while some thread holds or waits on it.

    Operations on the same receipt key run one at a time inside this
    process; the database row lock covers other processes.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of threads holding or waiting]
        self._locks: Dict[Hashable, List] = {}

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable, timeout: float = -1) -> Iterator[None]:
        """
        Raises:
            RecalculationFailedError: lock not acquired within timeout
        """
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=timeout):
                raise RecalculationFailedError(f"Timed out waiting for receipt lock {key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


receipt_locks = KeyedLockRegistry()
