"""
keystone.engine.locks — Per-key critical sections
=================================================

One lock per key (usually a user id), created on demand and dropped once
nobody holds or waits on it.  Unrelated users never contend; the registry
lock is only held while looking a key up.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class KeyedLocks:
    """Registry of reference-counted locks keyed by arbitrary hashables.

    Usage::

        locks = KeyedLocks()
        with locks.hold(("subscription", user_id)):
            ...  # serialized per user
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key → [lock, holders + waiters]
        self._entries: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# Process-wide registries shared by the services
subscription_locks = KeyedLocks()
milestone_locks = KeyedLocks()
