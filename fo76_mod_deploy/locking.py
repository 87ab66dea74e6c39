"""Per-key locking so one mod is never reconciled twice at the same time."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class _Flight:
    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class SingleFlight:
    """
    Mutex map keyed by mod UUID.

    Entries only live while someone holds or waits for them.
    """

    def __init__(self):
        self._flights: dict[str, _Flight] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._flights)

    def is_busy(self, key: str) -> bool:
        with self._guard:
            flight = self._flights.get(key)
            return flight is not None and flight.lock.locked()

    @contextmanager
    def acquire(self, key: str, wait: bool = False) -> Iterator[bool]:
        """
        Hold the lock for `key` for the duration of the block.

        Yields False without holding anything if the key is busy and `wait`
        is not set; with `wait` the caller queues until the key is free.
        """
        with self._guard:
            flight = self._flights.get(key)
            if flight is None:
                flight = self._flights[key] = _Flight()
            flight.users += 1

        acquired = flight.lock.acquire(blocking=wait)
        try:
            yield acquired
        finally:
            if acquired:
                flight.lock.release()
            with self._guard:
                flight.users -= 1
                if flight.users == 0:
                    del self._flights[key]
