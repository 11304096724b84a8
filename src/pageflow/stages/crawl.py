"""Recrawl stage: refetch pages whose effective age exceeds the recrawl interval."""

from __future__ import annotations

from pageflow.scheduling.recrawl import RecrawlPolicy

from .base import SqlFragment, StageDefinition


class CrawlStage(StageDefinition):
    name = "crawl"
    timestamp_field = "last_crawled_at"
    output_fields = ("http_status", "content_hash", "content_length", "content_text")
    required_fields = ("url",)

    def __init__(self, policy: RecrawlPolicy | None = None, new_only: bool = False) -> None:
        self.policy = policy or RecrawlPolicy()
        # Only pages that were never fetched.
        self.new_only = new_only

    @property
    def orders_by_id(self) -> bool:
        return False

    def eligibility_sql(self, now: float, force: bool = False) -> SqlFragment:
        base, params = super().eligibility_sql(now, force=True)
        if force:
            return base, params
        if self.new_only:
            return f"{base} AND last_crawled_at IS NULL", params
        return f"{base} AND {self.policy.sql_predicate()}", {**params, **self.policy.sql_params(now)}

    def order_sql(self, now: float) -> SqlFragment:
        return self.policy.sql_order(), self.policy.sql_params(now)
