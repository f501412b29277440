from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator


class PeriodLocks:
    """In-process mutual exclusion per (organization, period).

    Runs for different keys proceed concurrently; two writers for the same
    key serialize their delete/insert sequences. A key's lock is dropped from
    the registry once nobody holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, holders and waiters]
        self._locks: dict[tuple[str, str], list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: tuple[str, str]) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: tuple[str, str]) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, organization: str, period: str, timeout: float | None = None) -> Generator[None, None, None]:
        key = (organization, period)
        lock = self._checkout(key)
        try:
            acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                raise TimeoutError(f"Timed out waiting for allocation lock on {organization} {period}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


PERIOD_LOCKS = PeriodLocks()
