"""
Per-stage page locks.

A stage lock guarantees that at most one worker processes a given page in a
given stage at a time. Acquisition never waits: a worker that loses the race
skips the page. Locks that are never released (crashed worker) expire after
their TTL; expiry is the only recovery mechanism.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from pageflow.observability.events import LOCK_ACQUIRED, LOCK_DENIED, LOCK_RELEASED, NullEventSink
from pageflow.protocols import EventSink, LockStore


class StageLockManager:
    """Acquire and release ``(resource_id, stage)`` locks on a :class:`LockStore`."""

    def __init__(
        self,
        store: LockStore,
        ttl_seconds: float = 10.0,
        key_prefix: str = "page:lock",
        events: Optional[EventSink] = None,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self.events: EventSink = events or NullEventSink()

    def key(self, resource_id: int, stage: str) -> str:
        return f"{self.key_prefix}:{stage}:{resource_id}"

    async def acquire(self, resource_id: int, stage: str, ttl: Optional[float] = None) -> bool:
        """
        Try to claim the lock for ``resource_id`` in ``stage``.

        Args:
            resource_id: Page id.
            stage: Stage name; each stage has its own lock namespace.
            ttl: Lifetime in seconds, defaults to the manager's TTL.

        Returns:
            True if the lock is now held by this worker, False if another
            unexpired lock exists.
        """
        ttl_seconds = self.ttl_seconds if ttl is None else ttl
        acquired = await self.store.acquire(self.key(resource_id, stage), ttl_seconds)
        self.events.emit(
            LOCK_ACQUIRED if acquired else LOCK_DENIED,
            page_id=resource_id,
            stage=stage,
            ttl=ttl_seconds,
        )
        return acquired

    async def release(self, resource_id: int, stage: str) -> None:
        await self.store.release(self.key(resource_id, stage))
        self.events.emit(LOCK_RELEASED, page_id=resource_id, stage=stage)

    async def is_locked(self, resource_id: int, stage: str) -> bool:
        return await self.store.is_held(self.key(resource_id, stage))

    async def sweep(self) -> int:
        """Delete expired claims from backends that keep them around."""
        return await self.store.sweep()

    @asynccontextmanager
    async def hold(self, resource_id: int, stage: str, ttl: Optional[float] = None) -> AsyncIterator[bool]:
        """Acquire for the duration of the block; yields whether it was acquired."""
        acquired = await self.acquire(resource_id, stage, ttl)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(resource_id, stage)
