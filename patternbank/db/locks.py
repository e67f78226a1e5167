"""Concurrency primitives for store writes.

Two layers:
- the connection lock, held only for the duration of one SQL statement
  or one short transaction, because a sqlite3 connection is shared
  between threads;
- per-row locks, held across a read-modify-write of one pattern, so
  updates to the same (namespace, id) serialize while updates to
  different ids never wait on each other.

For multi-process safety the store also compares the row ``version``
inside the transaction; the row lock only orders threads in this process.
"""

import threading
from contextlib import contextmanager


class RowLocks:
    """Lazily created lock per key, with reference counting for cleanup."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [RLock, holders]

    @contextmanager
    def hold(self, *keys):
        """Acquire the locks for keys in a stable order (deadlock-free)."""
        ordered = sorted(set(keys))
        entries = []
        with self._guard:
            for key in ordered:
                entry = self._locks.setdefault(key, [threading.RLock(), 0])
                entry[1] += 1
                entries.append((key, entry))
        acquired = []
        try:
            for _, entry in entries:
                entry[0].acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry[0].release()
            with self._guard:
                for key, entry in entries:
                    entry[1] -= 1
                    if entry[1] == 0:
                        self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
