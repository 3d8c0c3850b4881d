"""
FlowLockRegistry -- per-flow mutual exclusion within one process.

Responsibility:
    Hands out one ``threading.Lock`` per key (a flow id, or an expense id
    while its flow is being started) so that every transition of a given
    flow runs serially while different flows proceed in parallel.

Architecture position:
    Kernel > Services -- imperative shell infrastructure used by
    ``ApprovalFlowService``.  Cross-process exclusion is provided by the
    database (SELECT ... FOR UPDATE plus the optimistic ``version`` column);
    this registry only removes in-process contention.

Invariants enforced:
    - At most one holder per key at any time.
    - Locks are reference counted and dropped once no thread holds or
      waits for them, so the registry does not grow with the number of
      flows ever seen.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class FlowLockRegistry:
    """Keyed locks with reference-counted cleanup."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
