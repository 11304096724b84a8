"""Product-type detection: is this page a product, is it in stock, what is it."""

from __future__ import annotations

from typing import Any, Dict

from pageflow.protocols import PageRecord

from .base import GeneratorStage, normalize_text, to_bool, truncate_text

SYSTEM_PROMPT = """\
You classify e-commerce web pages.

Read the page text and answer with a single JSON object and nothing else:
{
  "is_product": true or false,            // the page describes one concrete product for sale
  "is_product_available": true or false,  // the product can be ordered right now
  "product_type": "short generic noun phrase, singular" or null
}

Category listings, articles, search results and contact pages are not products.
If "is_product" is false, set the two other fields to null.
"""

CONTENT_PREVIEW_CHARS = 20_000


class ProductTypeStage(GeneratorStage):
    name = "product_type"
    timestamp_field = "product_type_detected_at"
    output_fields = ("is_product", "is_product_available", "product_type")
    required_fields = ("content_text", "last_crawled_at")
    system_prompt = SYSTEM_PROMPT
    required_keys = ("is_product", "is_product_available", "product_type")

    def build_user_content(self, page: PageRecord) -> str:
        parts = [f"URL: {page.url}"]
        if page.title:
            parts.append(f"Title: {page.title}")
        parts.append("\n=== PAGE CONTENT ===")
        parts.append((page.content_text or "")[:CONTENT_PREVIEW_CHARS])
        return truncate_text(self._join(parts), self.max_user_chars)

    def normalize(self, parsed: Dict[str, Any]) -> Dict[str, Any]:
        is_product = to_bool(parsed.get("is_product"))
        if not is_product:
            return {"is_product": False, "is_product_available": None, "product_type": None}

        product_type = parsed.get("product_type")
        return {
            "is_product": True,
            "is_product_available": to_bool(parsed.get("is_product_available")),
            "product_type": normalize_text(product_type) if isinstance(product_type, str) else None,
        }
