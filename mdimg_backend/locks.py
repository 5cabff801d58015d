from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator


@dataclass
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0
    last_used: float = 0.0


class KeyedLocks:
    """Identifier-keyed lock table.

    Locks are created on first use and reference counted. An entry nobody
    holds or waits on becomes evictable once it has been idle for
    ``idle_ttl`` seconds; ``prune`` runs on every janitor cycle and on release
    whenever the table grows past ``max_idle_entries``. Operations on
    different keys never contend beyond the short bookkeeping section.
    """

    def __init__(
        self,
        idle_ttl: float = 300.0,
        max_idle_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_ttl = idle_ttl
        self.max_idle_entries = max_idle_entries
        self._clock = clock
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            entry.last_used = self._clock()
            crowded = len(self._entries) > self.max_idle_entries
        if crowded:
            self.prune()

    def acquire(self, key: str, blocking: bool = True, timeout: float = -1) -> bool:
        entry = self._checkout(key)
        acquired = entry.lock.acquire(blocking, timeout)
        if not acquired:
            self._checkin(key, entry)
        return acquired

    def release(self, key: str) -> None:
        with self._guard:
            entry = self._entries.get(key)
        if entry is None:
            raise RuntimeError(f"release of unknown lock {key!r}")
        entry.lock.release()
        self._checkin(key, entry)

    def is_locked(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    @contextmanager
    def try_hold(self, key: str) -> Iterator[bool]:
        """Non-blocking variant: yields False when someone else holds the key."""
        acquired = self.acquire(key, blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)

    def prune(self, force: bool = False) -> int:
        """Evict idle, unreferenced entries. Returns the number evicted."""
        now = self._clock()
        with self._guard:
            stale = [
                key
                for key, entry in self._entries.items()
                if entry.users == 0 and (force or now - entry.last_used >= self.idle_ttl)
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)
