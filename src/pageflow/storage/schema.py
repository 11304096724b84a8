"""
Database schema definition for the PageFlow resource store.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

from sqlalchemy import Boolean, Column, Float, Index, Integer, MetaData, Table, Text, create_engine

# Using a standard naming convention for database objects
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

# All timestamps are UNIX epoch seconds.
pages_table = Table(
    "pages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("url", Text, nullable=False, unique=True),
    Column("domain", Text, index=True),
    Column("title", Text),
    Column("meta_description", Text),
    Column("page_type", Text),
    Column("inbound_links_count", Integer, nullable=False, default=0, server_default="0"),
    Column("created_at", Float),
    # crawl
    Column("last_crawled_at", Float, index=True),
    Column("http_status", Integer),
    Column("content_hash", Text),
    Column("content_length", Integer),
    Column("content_text", Text),
    Column("screenshot_path", Text),
    # product_type
    Column("is_product", Boolean),
    Column("is_product_available", Boolean),
    Column("product_type", Text),
    Column("product_type_detected_at", Float),
    # recap
    Column("product_summary", Text),
    Column("product_summary_specs", Text),
    Column("product_abilities", Text),
    Column("product_predicted_search_text", Text),
    Column("recap_generated_at", Float),
    # attributes
    Column("json_attributes", Text, comment="JSON object"),
    Column("product_original_article", Text),
    Column("product_model_number", Text),
    Column("attributes_extracted_at", Float),
    Column("product_metadata_extracted_at", Float),
)

page_stage_locks_table = Table(
    "page_stage_locks",
    metadata,
    Column("lock_key", Text, primary_key=True),
    Column("owner", Text, nullable=False),
    Column("acquired_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
)

ai_request_logs_table = Table(
    "ai_request_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("trace_id", Text, index=True),
    Column("stage", Text, index=True),
    Column("page_id", Integer, index=True),
    Column("provider", Text, nullable=False),
    Column("model", Text),
    Column("http_method", Text, nullable=False, default="POST"),
    Column("base_url", Text),
    Column("path", Text),
    Column("status_code", Integer),
    Column("duration_ms", Integer),
    Column("request_payload", Text),
    Column("response_payload", Text),
    Column("response_body", Text),
    Column("usage", Text),
    Column("error", Text),
    Column("created_at", Float, nullable=False, index=True),
)

Index("ix_pages_domain_id", pages_table.c.domain, pages_table.c.id)


def create_schema(db_path: Path, tables: Optional[Iterable[Table]] = None) -> None:
    """Create missing tables in the SQLite database at ``db_path``."""
    engine = create_engine(f"sqlite:///{db_path}")
    try:
        metadata.create_all(engine, tables=list(tables) if tables is not None else None)
    finally:
        engine.dispose()
