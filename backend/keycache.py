# backend/keycache.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from protocol.models import ECPublicJwk

log = logging.getLogger(__name__)

KeyFetcher = Callable[[str], Awaitable[ECPublicJwk]]


@dataclass(frozen=True)
class CacheEntry:
    key: ECPublicJwk
    expires_at: float


class PublicKeyCache:
    """
    Username -> public key, with a fixed TTL and explicit invalidation.

    Concurrent lookups for one username share a lock, so an invalidate
    racing an insert never loses. While a lookup is in flight, each
    invalidation bumps a per-user generation; a fetch that started before
    the bump hands its key back to the caller but does not cache it.
    Locks and generations are dropped when the last lookup for a user leaves.
    """

    def __init__(self, fetch: KeyFetcher, ttl: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self._fetch = fetch
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._inflight: Dict[str, int] = {}     # lookups holding or waiting on a lock
        self._generation: Dict[str, int] = {}
        self._epoch = 0     # bumped by a whole-cache invalidation
        self.fetch_count = 0

    def _enter(self, username: str) -> asyncio.Lock:
        self._inflight[username] = self._inflight.get(username, 0) + 1
        lock = self._locks.get(username)
        if lock is None:
            lock = self._locks[username] = asyncio.Lock()
        return lock

    def _leave(self, username: str) -> None:
        left = self._inflight[username] - 1
        if left:
            self._inflight[username] = left
            return
        del self._inflight[username]
        self._locks.pop(username, None)
        self._generation.pop(username, None)

    def _stamp(self, username: str) -> tuple[int, int]:
        return self._epoch, self._generation.get(username, 0)

    def peek(self, username: str) -> Optional[ECPublicJwk]:
        entry = self._entries.get(username)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry.key

    async def get(self, username: str, force_refresh: bool = False) -> ECPublicJwk:
        """
        Return a key snapshot for username. Fetch errors propagate to the caller.
        """
        if not force_refresh:
            cached = self.peek(username)
            if cached is not None:
                return cached

        lock = self._enter(username)
        try:
            async with lock:
                # another waiter may have refreshed it while we queued
                if not force_refresh:
                    cached = self.peek(username)
                    if cached is not None:
                        return cached

                stamp = self._stamp(username)
                self.fetch_count += 1
                key = await self._fetch(username)
                if self._stamp(username) == stamp:
                    self._entries[username] = CacheEntry(key, self._clock() + self._ttl)
                else:
                    log.debug("key for %s invalidated during fetch; not caching", username)
                return key
        finally:
            self._leave(username)

    def invalidate(self, username: Optional[str] = None) -> None:
        """Drop one user's entry, or every entry when username is None."""
        if username is None:
            self._entries.clear()
            self._epoch += 1
            log.info("public key cache cleared")
            return
        self._entries.pop(username, None)
        # only an in-flight fetch can observe the bump
        if username in self._inflight:
            self._generation[username] = self._generation.get(username, 0) + 1

    def in_flight(self) -> int:
        """Usernames with a lookup currently holding or waiting on a lock."""
        return len(self._inflight)

    def __len__(self) -> int:
        return len(self._entries)
