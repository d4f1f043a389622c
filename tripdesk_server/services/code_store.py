# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Two-tier key/value store for one-time code hashes.

The shared tier (Redis) takes writes when it is reachable. Otherwise writes land
in a bounded in-process tier that honours the same TTL, and that local copy wins
over anything Redis still holds for the key until a later write reaches Redis.

No operation raises: a cache hiccup must never fail an OTP request.
"""

import asyncio
import enum
import heapq
import logging
import time
import uuid
from collections.abc import Callable
from typing import Protocol

from redis import asyncio as aioredis

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Deletes KEYS[1] only while it still holds ARGV[1]
_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class PutOutcome(str, enum.Enum):
    STORED = "stored"
    FELL_BACK_TO_LOCAL = "fell_back_to_local"
    FAILED = "failed"


class SharedTier(Protocol):
    """Remote cache interface. Implementations raise on any failure."""

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> None: ...

    async def compare_and_delete(self, key: str, expected: str) -> bool: ...

    async def close(self) -> None: ...


class RedisCodeTier:
    """Shared tier on redis.asyncio."""

    def __init__(self, client: aioredis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, connect_timeout: float = 5.0) -> "RedisCodeTier":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            socket_timeout=connect_timeout,
        )
        return cls(client)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        removed = await self._client.eval(_COMPARE_AND_DELETE, 1, key, expected)
        return int(removed) == 1

    async def close(self) -> None:
        await self._client.aclose()


class LocalCodeTier:
    """In-process fallback: key -> (value, absolute expiry), lazily expired."""

    def __init__(self, clock: Clock = time.time, max_entries: int = 10000):
        self.clock = clock
        self._max_entries = max_entries
        self._entries: dict[str, tuple[str, float]] = {}
        # (expires_at, key) min-heap; items for replaced or removed keys are skipped on pop
        self._expiries: list[tuple[float, str]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def _is_current(self, expires_at: float, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry[1] == expires_at

    def _evict_soonest(self) -> None:
        while self._expiries:
            expires_at, key = heapq.heappop(self._expiries)
            if self._is_current(expires_at, key):
                del self._entries[key]
                return

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries.pop(key, None)
        if len(self._entries) >= self._max_entries:
            self.sweep()
        while self._entries and len(self._entries) >= self._max_entries:
            self._evict_soonest()
        expires_at = self.clock() + ttl_seconds
        self._entries[key] = (value, expires_at)
        heapq.heappush(self._expiries, (expires_at, key))
        if len(self._expiries) > 2 * len(self._entries) + 64:
            self._expiries = [(exp, k) for k, (_, exp) in self._entries.items()]
            heapq.heapify(self._expiries)

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def compare_and_delete(self, key: str, expected: str) -> bool:
        if self.get(key) != expected:
            return False
        del self._entries[key]
        return True

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self.clock()
        removed = 0
        while self._expiries and self._expiries[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiries)
            if self._is_current(expires_at, key):
                del self._entries[key]
                removed += 1
        return removed


class CodeStore:
    """
    Shared tier with a local fallback. Created once per process and injected.

    A local entry exists only while the latest write for its key fell back, so
    reads and consumes look there first. Keys written locally are also marked
    stale on the shared side: whatever Redis still holds for them predates the
    local write and is deleted, not served, once Redis answers again.
    """

    def __init__(
        self,
        shared: SharedTier | None,
        local: LocalCodeTier | None = None,
        local_fallback: bool = True,
    ):
        self.shared = shared
        self.local = local if local is not None else LocalCodeTier()
        self.local_fallback = local_fallback
        # key -> instant after which any shared copy has expired on its own
        self._stale_shared: dict[str, float] = {}
        self._longest_ttl = 0

    def _mark_stale(self, key: str) -> None:
        if self.shared is None:
            return
        until = self.local.clock() + self._longest_ttl
        self._stale_shared[key] = max(until, self._stale_shared.get(key, until))

    async def _drop_stale(self, key: str) -> None:
        try:
            await self.shared.delete(key)
        except Exception as e:
            logger.warning("Shared code tier unavailable to drop stale %s: %s", key, e)
            return
        self._stale_shared.pop(key, None)

    async def is_available(self) -> bool:
        """Round-trip a throwaway key through the shared tier."""
        if self.shared is None:
            return False
        key = f"code_store:probe:{uuid.uuid4().hex}"
        try:
            await self.shared.set(key, "1", 10)
            ok = await self.shared.get(key) == "1"
            await self.shared.delete(key)
            return ok
        except Exception as e:
            logger.debug("Shared code tier probe failed: %s", e)
            return False

    async def put(self, key: str, value: str, ttl_seconds: int) -> PutOutcome:
        self._longest_ttl = max(self._longest_ttl, ttl_seconds)
        if self.shared is not None:
            try:
                await self.shared.set(key, value, ttl_seconds)
                self.local.delete(key)
                self._stale_shared.pop(key, None)
                return PutOutcome.STORED
            except Exception as e:
                logger.warning("Shared code tier unavailable for put %s: %s", key, e)
        # The previous shared value, if any, is no longer the current one
        self._mark_stale(key)
        if not self.local_fallback:
            logger.error("Code %s not stored: shared tier down and local fallback disabled", key)
            return PutOutcome.FAILED
        self.local.set(key, value, ttl_seconds)
        logger.info("Code stored in local tier: %s", key)
        return PutOutcome.FELL_BACK_TO_LOCAL

    async def get(self, key: str) -> str | None:
        value = self.local.get(key)
        if value is not None or self.shared is None:
            return value
        if key in self._stale_shared:
            await self._drop_stale(key)
            return None
        try:
            return await self.shared.get(key)
        except Exception as e:
            logger.warning("Shared code tier unavailable for get %s: %s", key, e)
            return None

    async def delete(self, key: str) -> None:
        self.local.delete(key)
        if self.shared is None:
            return
        try:
            await self.shared.delete(key)
            self._stale_shared.pop(key, None)
        except Exception as e:
            logger.warning("Shared code tier unavailable for delete %s: %s", key, e)
            self._mark_stale(key)

    async def consume(self, key: str, expected: str) -> bool:
        """
        Remove key only if it still holds expected, in whichever tier is
        current for it. Of several concurrent callers exactly one gets True.
        """
        if self.local.compare_and_delete(key, expected):
            if key in self._stale_shared:
                await self._drop_stale(key)
            return True
        if key in self.local or self.shared is None:
            return False
        if key in self._stale_shared:
            await self._drop_stale(key)
            return False
        try:
            return await self.shared.compare_and_delete(key, expected)
        except Exception as e:
            logger.warning("Shared code tier unavailable for consume %s: %s", key, e)
            return False

    def sweep(self) -> int:
        now = self.local.clock()
        for key in [k for k, until in self._stale_shared.items() if now >= until]:
            del self._stale_shared[key]
        return self.local.sweep()

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Sweep the local tier forever. Run as a background task."""
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("Swept %d expired local codes", removed)

    async def close(self) -> None:
        if self.shared is not None:
            await self.shared.close()
