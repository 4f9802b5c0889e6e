from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class TempPasswordCache:
    """Temporary passwords handed out by admins, keyed by lowercased username.

    Entries expire ``ttl`` seconds after ``put``; ``get`` never returns an
    expired entry and ``sweep`` drops them.
    """

    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(username: str) -> str:
        return username.strip().lower()

    def put(self, username: str, password: str, ttl: float | None = None) -> None:
        expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
        with self._lock:
            self._entries[self._key(username)] = (password, expires_at)

    def get(self, username: str) -> str | None:
        key = self._key(username)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            password, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return password

    def pop(self, username: str) -> str | None:
        password = self.get(username)
        with self._lock:
            self._entries.pop(self._key(username), None)
        return password

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


async def run_sweeper(cache: TempPasswordCache, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        removed = cache.sweep()
        if removed:
            logger.info("Expired %s temporary password(s)", removed)
