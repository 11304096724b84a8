"""
Recrawl priority formula.

Pages age from their last crawl, but popular pages (many inbound links) are
allowed to age longer before they are considered stale::

    effective_age_hours = hours_since_last_crawl - inbound_links * hours_per_link
    needs_recrawl = never crawled
                    or (effective_age_hours > max_interval_hours
                        and hours_since_last_crawl >= min_interval_minutes / 60)

The same rule exists twice: :class:`RecrawlPolicy` evaluates it for a single
record, and :meth:`RecrawlPolicy.sql_predicate` / :meth:`RecrawlPolicy.sql_order`
express it for the candidate query. Both must stay consistent.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from pageflow.config.config import RecrawlConfig
from pageflow.protocols import PageRecord

SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True)
class RecrawlPolicy:
    min_interval_minutes: float = 20
    max_interval_hours: float = 480
    hours_per_link: float = 1

    @classmethod
    def from_config(cls, config: RecrawlConfig) -> RecrawlPolicy:
        return cls(
            min_interval_minutes=config.min_interval_minutes,
            max_interval_hours=config.max_interval_hours,
            hours_per_link=config.hours_per_link,
        )

    # -- single record ------------------------------------------------------

    def hours_since(self, last_crawled_at: Optional[float], now: Optional[float] = None) -> float:
        if last_crawled_at is None:
            return math.inf
        current = time.time() if now is None else now
        return (current - last_crawled_at) / SECONDS_PER_HOUR

    def effective_age_hours(self, last_crawled_at: Optional[float], inbound_links: int, now: Optional[float] = None) -> float:
        """Staleness score; ``+inf`` for a page that was never crawled."""
        hours = self.hours_since(last_crawled_at, now)
        if math.isinf(hours):
            return math.inf
        return hours - (inbound_links or 0) * self.hours_per_link

    def needs_recrawl(self, last_crawled_at: Optional[float], inbound_links: int, now: Optional[float] = None) -> bool:
        if last_crawled_at is None:
            return True
        hours = self.hours_since(last_crawled_at, now)
        effective = hours - (inbound_links or 0) * self.hours_per_link
        return effective > self.max_interval_hours and hours >= self.min_interval_minutes / 60.0

    def page_needs_recrawl(self, page: PageRecord, now: Optional[float] = None) -> bool:
        return self.needs_recrawl(page.last_crawled_at, page.inbound_links_count, now)

    def next_recrawl_at(self, page: PageRecord) -> Optional[float]:
        """Earliest time at which ``page`` becomes due; ``None`` for a page never crawled."""
        if page.last_crawled_at is None:
            return None
        by_age = (self.max_interval_hours + (page.inbound_links_count or 0) * self.hours_per_link) * SECONDS_PER_HOUR
        by_floor = self.min_interval_minutes * 60.0
        # effective age must exceed the threshold strictly, hence the epsilon
        return page.last_crawled_at + max(by_age + 1e-6, by_floor)

    def sort_key(self, page: PageRecord, now: Optional[float] = None) -> Tuple[int, float, int]:
        """Never-crawled first, then oldest effective age, then lowest id."""
        never = 0 if page.last_crawled_at is None else 1
        age = self.effective_age_hours(page.last_crawled_at, page.inbound_links_count, now)
        return (never, -age if not math.isinf(age) else 0.0, page.id)

    # -- SQL ----------------------------------------------------------------

    def sql_params(self, now: float) -> Dict[str, Any]:
        return {
            "rc_now": now,
            "rc_hours_per_link": self.hours_per_link,
            "rc_max_hours": self.max_interval_hours,
            "rc_min_hours": self.min_interval_minutes / 60.0,
        }

    @staticmethod
    def _sql_hours_since() -> str:
        return f"((:rc_now - last_crawled_at) / {SECONDS_PER_HOUR})"

    def sql_effective_age(self) -> str:
        return f"({self._sql_hours_since()} - COALESCE(inbound_links_count, 0) * :rc_hours_per_link)"

    def sql_predicate(self) -> str:
        return (
            "(last_crawled_at IS NULL OR "
            f"({self.sql_effective_age()} > :rc_max_hours AND {self._sql_hours_since()} >= :rc_min_hours))"
        )

    def sql_order(self) -> str:
        return f"(last_crawled_at IS NULL) DESC, {self.sql_effective_age()} DESC, id ASC"
