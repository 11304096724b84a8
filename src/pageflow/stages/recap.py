"""Product recap: summary, specs, abilities and predicted search queries."""

from __future__ import annotations

import re
from typing import Any, Dict

from pageflow.protocols import PageRecord

from .base import GeneratorStage, normalize_search_queries, normalize_text, require_fields, truncate_text

SYSTEM_PROMPT = """\
You write short product recaps for a shop search index.

You get a screenshot of a product page and some text from it. Answer with a
single JSON object and nothing else:
{
  "product_summary": "two or three sentences on what the product is",
  "product_summary_specs": "the key specifications as one paragraph",
  "product_abilities": "what a buyer can do with it, as one paragraph",
  "product_predicted_search_text": "5 to 10 search queries a buyer would type, comma-separated"
}

Use the language of the page. Do not invent specifications that are not visible.
"""

RECAP_FIELDS = (
    "product_summary",
    "product_summary_specs",
    "product_abilities",
    "product_predicted_search_text",
)
CONTENT_PREVIEW_CHARS = 2_500

_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


def content_preview(text: str, max_chars: int = CONTENT_PREVIEW_CHARS) -> str:
    """Single-line, tag-free prefix of the page text."""
    flat = _WHITESPACE.sub(" ", _TAG.sub(" ", text)).strip()
    return flat[: max(1, max_chars)]


class RecapStage(GeneratorStage):
    name = "recap"
    timestamp_field = "recap_generated_at"
    output_fields = RECAP_FIELDS
    required_fields = ("content_text", "screenshot_path", "last_crawled_at")
    conditions = ("is_product = 1 OR page_type = 'product'",)
    system_prompt = SYSTEM_PROMPT
    required_keys = RECAP_FIELDS
    uses_image = True

    def pending_sql(self) -> str:
        # Any missing recap field makes the page pending again.
        return " OR ".join(f"{name} IS NULL OR TRIM({name}) = ''" for name in RECAP_FIELDS)

    def build_user_content(self, page: PageRecord) -> str:
        parts = [f"URL: {page.url}"]
        if page.title:
            parts.append(f"Title: {page.title}")
        if page.meta_description:
            parts.append(f"Description: {page.meta_description}")
        preview = content_preview(page.content_text or "")
        if preview:
            parts.append(f"Content preview: {preview}")
        return truncate_text(self._join(parts), self.max_user_chars)

    def normalize(self, parsed: Dict[str, Any]) -> Dict[str, Any]:
        return require_fields(
            {
                "product_summary": normalize_text(parsed.get("product_summary")),
                "product_summary_specs": normalize_text(parsed.get("product_summary_specs")),
                "product_abilities": normalize_text(parsed.get("product_abilities")),
                "product_predicted_search_text": normalize_search_queries(
                    parsed.get("product_predicted_search_text")
                ),
            }
        )
