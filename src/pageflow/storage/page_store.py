"""
Async SQLite store for crawled pages.

The store is the only component that writes to the ``pages`` table. Stage
output is written with :meth:`PageStore.complete_stage`, a single-row UPDATE
that sets every output field together with the stage timestamp, so a page is
never left half-written.
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional
from urllib.parse import urlparse

import aiosqlite
import structlog

from pageflow.config.config import StorageConfig
from pageflow.errors import PageNotFoundError
from pageflow.protocols import PageRecord

from .schema import create_schema, pages_table

logger = structlog.get_logger(__name__)

# Incremented whenever schema.py changes.
CURRENT_SCHEMA_VERSION = 1

PAGE_COLUMNS = frozenset(c.name for c in pages_table.columns)
_JSON_COLUMNS = frozenset({"json_attributes"})


class PageStore:
    """Handles all interactions with the ``pages`` table."""

    def __init__(self, config: StorageConfig) -> None:
        self.config = config
        self.db_path = Path(config.db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Open the connection and bring the schema up to date."""
        if self._db is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        if self.config.wal_mode:
            await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(f"PRAGMA busy_timeout = {int(self.config.busy_timeout_ms)};")
        self._db.row_factory = aiosqlite.Row
        await self._run_migrations()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> PageStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("PageStore used before initialize()")
        return self._db

    async def _run_migrations(self) -> None:
        cursor = await self.db.execute("PRAGMA user_version;")
        version_row = await cursor.fetchone()
        current_version = version_row[0] if version_row is not None else 0

        if current_version < CURRENT_SCHEMA_VERSION:
            logger.info("Migrating database schema", from_version=current_version, to_version=CURRENT_SCHEMA_VERSION)
            create_schema(self.db_path)
            await self.db.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION};")
            await self.db.commit()

    # -- writes -------------------------------------------------------------

    async def add_page(
        self,
        url: str,
        *,
        domain: Optional[str] = None,
        title: Optional[str] = None,
        inbound_links_count: int = 0,
        **fields: Any,
    ) -> int:
        """Insert a discovered page, returning its id. Known URLs keep their row."""
        values: Dict[str, Any] = {
            "url": url,
            "domain": domain or urlparse(url).hostname,
            "title": title,
            "inbound_links_count": inbound_links_count,
            "created_at": time.time(),
        }
        values.update(fields)
        values = _to_db_values(_checked(values))

        columns = ", ".join(values)
        placeholders = ", ".join(f":{name}" for name in values)
        await self.db.execute(
            f"INSERT INTO pages ({columns}) VALUES ({placeholders}) ON CONFLICT(url) DO NOTHING",
            values,
        )
        await self.db.commit()

        cursor = await self.db.execute("SELECT id FROM pages WHERE url = ?", (url,))
        row = await cursor.fetchone()
        assert row is not None
        return int(row["id"])

    async def update_fields(self, page_id: int, fields: Mapping[str, Any]) -> bool:
        """Write arbitrary page columns in one statement."""
        if not fields:
            return False
        values = _to_db_values(_checked(dict(fields)))
        assignments = ", ".join(f"{name} = :{name}" for name in values)
        cursor = await self.db.execute(
            f"UPDATE pages SET {assignments} WHERE id = :_page_id",
            {**values, "_page_id": page_id},
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def complete_stage(
        self,
        page_id: int,
        fields: Mapping[str, Any],
        timestamp_field: str,
        completed_at: Optional[float] = None,
    ) -> float:
        """
        Persist a stage's output and its completion timestamp atomically.

        Args:
            page_id: Page to update.
            fields: Normalized stage output.
            timestamp_field: Column marking the stage as done for this page.
            completed_at: Completion time, defaults to now.

        Returns:
            The completion timestamp that was written.

        Raises:
            PageNotFoundError: If the page vanished while it was being processed.
        """
        at = time.time() if completed_at is None else completed_at
        if not await self.update_fields(page_id, {**fields, timestamp_field: at}):
            raise PageNotFoundError(page_id)
        return at

    async def increment_inbound_links(self, url: str, by: int = 1) -> None:
        await self.db.execute(
            "UPDATE pages SET inbound_links_count = inbound_links_count + ? WHERE url = ?",
            (by, url),
        )
        await self.db.commit()

    # -- reads --------------------------------------------------------------

    async def get_page(self, page_id: int) -> Optional[PageRecord]:
        cursor = await self.db.execute("SELECT * FROM pages WHERE id = ?", (page_id,))
        row = await cursor.fetchone()
        return PageRecord.from_row(row) if row is not None else None

    async def require_page(self, page_id: int) -> PageRecord:
        page = await self.get_page(page_id)
        if page is None:
            raise PageNotFoundError(page_id)
        return page

    async def fetch_rows(self, sql: str, params: Mapping[str, Any] | Iterable[Any] = ()) -> List[aiosqlite.Row]:
        cursor = await self.db.execute(sql, params)  # type: ignore[arg-type]
        return list(await cursor.fetchall())

    async def fetch_row(self, sql: str, params: Mapping[str, Any] | Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        cursor = await self.db.execute(sql, params)  # type: ignore[arg-type]
        return await cursor.fetchone()

    async def count_pages(self) -> int:
        row = await self.fetch_row("SELECT COUNT(*) AS n FROM pages")
        return int(row["n"]) if row is not None else 0


def _checked(values: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(values) - PAGE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown page columns: {', '.join(sorted(unknown))}")
    return values


def _to_db_values(values: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name, value in values.items():
        if name in _JSON_COLUMNS and value is not None and not isinstance(value, str):
            value = json.dumps(value, ensure_ascii=False)
        elif isinstance(value, bool):
            value = int(value)
        out[name] = value
    return out
