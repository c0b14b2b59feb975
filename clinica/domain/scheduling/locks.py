"""In-process serialisation of writes per (doctor, date)"""

from contextlib import contextmanager
from datetime import date
from threading import Lock


class SlotLockRegistry:
    """
    Keyed locks shared by every request in the process.

    Entries are reference counted and dropped once no writer holds or waits
    for them. Several keys are always acquired in sorted order so that two
    reschedules crossing the same pair of days cannot deadlock.
    """

    def __init__(self):
        self._guard = Lock()
        self._locks: dict[tuple[str, str], list] = {}  # key -> [lock, users]

    def _checkout(self, key: tuple[str, str]) -> Lock:
        with self._guard:
            entry = self._locks.setdefault(key, [Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _release(self, key: tuple[str, str]) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *slots: tuple[str, date]):
        keys = sorted({(doctor_id, day.isoformat()) for doctor_id, day in slots})
        acquired = []
        try:
            for key in keys:
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._release(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._release(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
