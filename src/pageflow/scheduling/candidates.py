"""
Candidate selection.

The selector answers "which page should this stage process next?" by asking
the page store for the first eligible page past a cursor. The cursor only
ever moves forward, so a page the runner skipped (locked, failed) is not
handed out again in the same run.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

import structlog

from pageflow.protocols import Candidate, PageRecord
from pageflow.storage.page_store import PageStore

if TYPE_CHECKING:
    from pageflow.stages.base import StageDefinition

logger = structlog.get_logger(__name__)


@dataclass
class Cursor:
    """Position of a batch run within a stage's candidate sequence."""

    after_id: int = 0
    seen: Set[int] = field(default_factory=set)

    def advance(self, page_id: int) -> None:
        self.after_id = max(self.after_id, page_id)
        self.seen.add(page_id)


class CandidateSelector:
    """Finds eligible pages for a stage, one at a time."""

    def __init__(self, store: PageStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    def _query(
        self,
        stage: StageDefinition,
        cursor: Optional[Cursor],
        domain: Optional[str],
        force: bool,
        limit: int,
    ) -> tuple[str, Dict[str, Any]]:
        now = self._clock()
        eligibility, params = stage.eligibility_sql(now, force)
        order, order_params = stage.order_sql(now)
        params = {**params, **order_params, "limit": limit}

        where = [f"({eligibility})"]
        if domain:
            where.append("domain = :domain")
            params["domain"] = domain
        if cursor is not None:
            if stage.orders_by_id:
                where.append("id > :after_id")
                params["after_id"] = cursor.after_id
            elif cursor.seen:
                where.append("id NOT IN (SELECT value FROM json_each(:seen))")
                params["seen"] = json.dumps(sorted(cursor.seen))

        sql = f"SELECT * FROM pages WHERE {' AND '.join(where)} ORDER BY {order} LIMIT :limit"
        return sql, params

    async def next(
        self,
        cursor: Cursor,
        stage: StageDefinition,
        domain: Optional[str] = None,
        force: bool = False,
    ) -> Optional[Candidate]:
        """
        Return the next eligible page after ``cursor`` and advance the cursor.

        Args:
            cursor: Run position; updated in place when a candidate is returned.
            stage: Stage to select for.
            domain: Only consider pages of this domain.
            force: Ignore "already done" for the stage's own outputs.

        Returns:
            The candidate, or None when the stage has nothing left to do.
        """
        sql, params = self._query(stage, cursor, domain, force, limit=1)
        row = await self.store.fetch_row(sql, params)
        if row is None:
            return None
        page = PageRecord.from_row(row)
        cursor.advance(page.id)
        return Candidate(page=page, stage=stage.name, eligible=True)

    async def get(self, resource_id: int, stage: StageDefinition, force: bool = False) -> Optional[Candidate]:
        """Look up one page by id and report whether it is eligible, bypassing ordering."""
        now = self._clock()
        eligibility, params = stage.eligibility_sql(now, force)
        row = await self.store.fetch_row(
            f"SELECT *, ({eligibility}) AS _eligible FROM pages WHERE id = :page_id",
            {**params, "page_id": resource_id},
        )
        if row is None:
            return None
        eligible = bool(row["_eligible"])
        return Candidate(
            page=PageRecord.from_row(row),
            stage=stage.name,
            eligible=eligible,
            reason=None if eligible else "preconditions not met or stage already done",
        )

    async def pending(
        self,
        stage: StageDefinition,
        limit: int = 20,
        domain: Optional[str] = None,
        force: bool = False,
    ) -> List[Candidate]:
        """List the next ``limit`` candidates without claiming them."""
        sql, params = self._query(stage, None, domain, force, limit=limit)
        rows = await self.store.fetch_rows(sql, params)
        return [Candidate(page=PageRecord.from_row(row), stage=stage.name) for row in rows]

    async def count_pending(self, stage: StageDefinition, domain: Optional[str] = None, force: bool = False) -> int:
        now = self._clock()
        eligibility, params = stage.eligibility_sql(now, force)
        sql = f"SELECT COUNT(*) AS n FROM pages WHERE ({eligibility})"
        if domain:
            sql += " AND domain = :domain"
            params = {**params, "domain": domain}
        row = await self.store.fetch_row(sql, params)
        return int(row["n"]) if row is not None else 0
