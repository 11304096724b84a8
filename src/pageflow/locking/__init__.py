from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .manager import StageLockManager
from .stores import MemoryLockStore, RedisLockStore, SQLiteClaimLockStore

if TYPE_CHECKING:
    from pageflow.config.config import LockConfig
    from pageflow.protocols import LockStore


def build_lock_store(config: LockConfig, db_path: Optional[Path] = None) -> LockStore:
    """Create the lock store named by ``config.backend``."""
    if config.backend == "redis":
        return RedisLockStore(config.redis_url)
    if config.backend == "sqlite":
        if db_path is None:
            raise ValueError("sqlite lock backend needs the resource database path")
        return SQLiteClaimLockStore(db_path)
    return MemoryLockStore()


__all__ = ["MemoryLockStore", "RedisLockStore", "SQLiteClaimLockStore", "StageLockManager", "build_lock_store"]
