"""
Lock store backends.

All backends implement the same contract: ``acquire`` is an atomic
check-and-set that fails fast when an unexpired claim exists, claims expire
on their own after the TTL, and ``release`` is idempotent and only drops a
claim made by the same store instance.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
from uuid import uuid4

import aiosqlite
import redis.asyncio as aioredis
import structlog
from redis.exceptions import WatchError

from pageflow.storage.schema import create_schema, page_stage_locks_table

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


class MemoryLockStore:
    """In-process lock store for single-worker runs and tests."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._locks: Dict[str, Tuple[str, float]] = {}
        self.owner = uuid4().hex

    async def acquire(self, key: str, ttl_seconds: float) -> bool:
        now = self._clock()
        current = self._locks.get(key)
        if current is not None and current[1] > now:
            return False
        self._locks[key] = (self.owner, now + ttl_seconds)
        return True

    async def release(self, key: str) -> None:
        current = self._locks.get(key)
        if current is not None and current[0] == self.owner:
            del self._locks[key]

    async def is_held(self, key: str) -> bool:
        current = self._locks.get(key)
        return current is not None and current[1] > self._clock()

    async def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._locks.items() if expires_at <= now]
        for key in expired:
            del self._locks[key]
        return len(expired)

    async def close(self) -> None:
        self._locks.clear()


class RedisLockStore:
    """Lock store on ``SET key token NX PX ttl``; Redis handles expiry."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", client: Optional[Any] = None) -> None:
        self.redis_url = redis_url
        self._client = client
        self._owns_client = client is None
        self.owner = uuid4().hex

    async def initialize(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(self.redis_url, decode_responses=True)
        await self._client.ping()
        logger.info("Redis lock store ready", url=self.redis_url if self._owns_client else "injected")

    @property
    def client(self) -> Any:
        if self._client is None:
            raise RuntimeError("RedisLockStore used before initialize()")
        return self._client

    async def acquire(self, key: str, ttl_seconds: float) -> bool:
        ttl_ms = max(1, int(ttl_seconds * 1000))
        result = await self.client.set(key, self.owner, nx=True, px=ttl_ms)
        return bool(result)

    async def release(self, key: str) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                value = await pipe.get(key)
                if isinstance(value, bytes):
                    value = value.decode("utf-8")
                if value != self.owner:
                    await pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except WatchError:
                # Claim changed hands between GET and DEL; it is no longer ours.
                logger.debug("Lock changed before release", key=key)

    async def is_held(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def sweep(self) -> int:
        return 0

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class SQLiteClaimLockStore:
    """
    Claim-and-commit lock table inside the resource database.

    A claim is an upsert into ``page_stage_locks`` that only overwrites an
    existing row once its ``expires_at`` has passed. Each claim is committed
    on its own, so other worker processes see it immediately.
    """

    _ACQUIRE_SQL = """
        INSERT INTO page_stage_locks (lock_key, owner, acquired_at, expires_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(lock_key) DO UPDATE SET
            owner = excluded.owner,
            acquired_at = excluded.acquired_at,
            expires_at = excluded.expires_at
        WHERE page_stage_locks.expires_at <= ?
    """

    def __init__(self, db_path: Path, clock: Clock = time.time, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self.owner = uuid4().hex

    async def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        create_schema(self.db_path, tables=[page_stage_locks_table])
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)};")

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SQLiteClaimLockStore used before initialize()")
        return self._db

    async def acquire(self, key: str, ttl_seconds: float) -> bool:
        now = self._clock()
        async with self._lock:
            cursor = await self.db.execute(self._ACQUIRE_SQL, (key, self.owner, now, now + ttl_seconds, now))
            await self.db.commit()
            return cursor.rowcount == 1

    async def release(self, key: str) -> None:
        async with self._lock:
            await self.db.execute("DELETE FROM page_stage_locks WHERE lock_key = ? AND owner = ?", (key, self.owner))
            await self.db.commit()

    async def is_held(self, key: str) -> bool:
        cursor = await self.db.execute(
            "SELECT 1 FROM page_stage_locks WHERE lock_key = ? AND expires_at > ?", (key, self._clock())
        )
        return await cursor.fetchone() is not None

    async def sweep(self) -> int:
        async with self._lock:
            cursor = await self.db.execute("DELETE FROM page_stage_locks WHERE expires_at <= ?", (self._clock(),))
            await self.db.commit()
            return cursor.rowcount

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
