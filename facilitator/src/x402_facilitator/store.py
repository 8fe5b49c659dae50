# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""TTL key stores backing the nonce ledger and the idempotency ledger.

Contract:
  - `add(key, ttl_s, value)` records the key unless a live entry already
    exists and reports whether it did so; the check and the write happen as
    one step.
  - `get(key)` returns the live value, `contains(key)` reports a live entry.
  - `put(key, value, ttl_s)` overwrites, `discard(key)` removes.

Backends:
  - MemoryTTLStore: process-local `cachetools.TLRUCache`; expired entries
    are purged on every write.
  - FileTTLStore: the memory store mirrored to a JSON file on local disk.
    Single replica only; two processes sharing the file do not see each
    other's writes atomically.
  - RedisTTLStore: `SET NX PX`, safe for multiple facilitator replicas.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

from cachetools import TLRUCache

logger = logging.getLogger(__name__)

MAX_ENTRIES = 1_000_000
PRESENT = "1"


class TTLStore(ABC):
    @abstractmethod
    async def add(self, key: str, ttl_s: float, value: str = PRESENT) -> bool:
        """Record `key` for `ttl_s` seconds unless it is live. True if recorded."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def put(self, key: str, value: str, ttl_s: float) -> None:
        ...

    @abstractmethod
    async def discard(self, key: str) -> None:
        ...

    async def contains(self, key: str) -> bool:
        return await self.get(key) is not None

    async def close(self) -> None:
        return None


def _entry_expiry(_key: str, entry: Tuple[str, float], _now: float) -> float:
    return entry[1]


class MemoryTTLStore(TTLStore):
    def __init__(self, clock: Callable[[], float] = time.time, maxsize: int = MAX_ENTRIES):
        self._clock = clock
        # key -> (value, absolute expiry)
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_entry_expiry, timer=clock)
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        self._cache.expire()
        return len(self._cache)

    async def add(self, key: str, ttl_s: float, value: str = PRESENT) -> bool:
        async with self._lock:
            if key in self._cache:
                return False
            self._cache[key] = (value, self._clock() + ttl_s)
            await self._changed()
            return True

    async def get(self, key: str) -> Optional[str]:
        entry = self._cache.get(key)
        return entry[0] if entry else None

    async def put(self, key: str, value: str, ttl_s: float) -> None:
        async with self._lock:
            self._cache[key] = (value, self._clock() + ttl_s)
            await self._changed()

    async def discard(self, key: str) -> None:
        async with self._lock:
            if self._cache.pop(key, None) is not None:
                await self._changed()

    def _live_rows(self) -> List[dict]:
        self._cache.expire()
        return [
            {"key": key, "value": entry[0], "expiresAt": entry[1]}
            for key, entry in list(self._cache.items())
        ]

    async def _changed(self) -> None:
        return None


class FileTTLStore(MemoryTTLStore):
    """Memory store mirrored to `<directory>/<name>.json`, live rows only."""

    def __init__(self, directory: str, name: str, clock: Callable[[], float] = time.time, maxsize: int = MAX_ENTRIES):
        super().__init__(clock=clock, maxsize=maxsize)
        os.makedirs(directory, exist_ok=True)
        self.path = os.path.join(directory, f"{name}.json")
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                rows = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable store file {self.path}: {e}")
            return
        now = self._clock()
        for row in rows:
            try:
                key, expires_at = str(row["key"]), float(row["expiresAt"])
            except (KeyError, TypeError, ValueError):
                continue
            if expires_at > now:
                self._cache[key] = (str(row.get("value", PRESENT)), expires_at)
        logger.info(f"Loaded {len(self._cache)} live entries from {self.path}")

    async def _changed(self) -> None:
        await asyncio.to_thread(self._write, self._live_rows())

    def _write(self, rows: List[dict]) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(rows, f)
        os.replace(tmp, self.path)


class RedisTTLStore(TTLStore):
    def __init__(self, redis_url: str, namespace: str, client=None):
        if client is None:
            import redis.asyncio as aioredis

            client = aioredis.from_url(redis_url, decode_responses=True)
        self._client = client
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"x402:{self._namespace}:{key}"

    @staticmethod
    def _px(ttl_s: float) -> int:
        return max(1, int(ttl_s * 1000))

    async def add(self, key: str, ttl_s: float, value: str = PRESENT) -> bool:
        return bool(await self._client.set(self._key(key), value, nx=True, px=self._px(ttl_s)))

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(self._key(key))

    async def put(self, key: str, value: str, ttl_s: float) -> None:
        await self._client.set(self._key(key), value, px=self._px(ttl_s))

    async def discard(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def close(self) -> None:
        await self._client.aclose()


def create_store(name: str, *, redis_url: Optional[str] = None, directory: str = "data") -> TTLStore:
    if redis_url:
        logger.info(f"Using Redis store for {name}")
        return RedisTTLStore(redis_url, name)
    logger.info(f"Using file store for {name} under {directory}")
    return FileTTLStore(directory, name)
