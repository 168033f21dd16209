from __future__ import annotations

from contextlib import contextmanager
import threading
from typing import Iterable, Iterator

from .path_policy import normalize_rel_path


class PathLockManager:
    """
    Per-path advisory locks keyed by normalized relative path.

    Locks are always taken in sorted order so two callers asking for
    overlapping sets cannot deadlock. Re-entrant per thread.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._users: dict[str, int] = {}

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            lk = self._locks.get(key)
            if lk is None:
                lk = threading.RLock()
                self._locks[key] = lk
            self._users[key] = self._users.get(key, 0) + 1
            return lk

    def _checkin(self, key: str) -> None:
        with self._guard:
            n = self._users.get(key, 0) - 1
            if n <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._users[key] = n

    @contextmanager
    def hold(self, paths: Iterable[str]) -> Iterator[list[str]]:
        keys = sorted({normalize_rel_path(p) for p in paths if str(p or "").strip()})
        acquired: list[tuple[str, threading.RLock]] = []
        try:
            for key in keys:
                lk = self._checkout(key)
                lk.acquire()
                acquired.append((key, lk))
            yield keys
        finally:
            for key, lk in reversed(acquired):
                lk.release()
                self._checkin(key)

    def held_count(self) -> int:
        with self._guard:
            return len(self._locks)
