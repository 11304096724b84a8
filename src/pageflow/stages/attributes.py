"""Attribute extraction from a product page screenshot."""

from __future__ import annotations

from typing import Any, Dict

from pageflow.errors import ValidationShapeError

from .base import GeneratorStage, normalize_nullable_string, require_key

SYSTEM_PROMPT = """\
You extract structured product data from a screenshot of a product page.

Answer with a single JSON object and nothing else:
{
  "product_original_article": "manufacturer article / SKU as printed" or null,
  "product_model_number": "model number" or null,
  "attributes": { "attribute name": "value", ... }
}

Only include attributes that are visible on the page. Keep attribute names
as they appear on the page.
"""

IDENTIFIER_MAX_LENGTH = 128
# Older prompts answered with "product_code" instead of "product_original_article".
LEGACY_ARTICLE_KEY = "product_code"


class AttributesStage(GeneratorStage):
    name = "attributes"
    timestamp_field = "attributes_extracted_at"
    output_fields = ("json_attributes", "product_original_article", "product_model_number")
    required_fields = ("content_text", "screenshot_path", "product_type")
    conditions = ("is_product = 1", "is_product_available = 1")
    system_prompt = SYSTEM_PROMPT
    required_keys = ("product_model_number", "attributes")
    uses_image = True
    max_user_chars = 4_000
    also_stamps = ("product_metadata_extracted_at",)

    def normalize(self, parsed: Dict[str, Any]) -> Dict[str, Any]:
        article_key = require_key(parsed, "product_original_article", LEGACY_ARTICLE_KEY)

        attributes = parsed.get("attributes")
        if attributes == []:
            # an empty JSON array is how some models say "no attributes"
            attributes = {}
        if not isinstance(attributes, dict):
            raise ValidationShapeError(
                f"'attributes' must be an object, got {type(attributes).__name__}", field="attributes"
            )

        return {
            "json_attributes": attributes,
            "product_original_article": normalize_nullable_string(parsed.get(article_key), IDENTIFIER_MAX_LENGTH),
            "product_model_number": normalize_nullable_string(
                parsed.get("product_model_number"), IDENTIFIER_MAX_LENGTH
            ),
        }
