"""
Tests for stage definitions and answer normalization.
"""

import pytest

from pageflow.errors import MissingRequiredKeyError, UnknownStageError, ValidationShapeError
from pageflow.protocols import PageRecord
from pageflow.stages import AttributesStage, ProductTypeStage, RecapStage, default_registry
from pageflow.stages.base import (
    TRUNCATION_MARKER,
    GeneratorStage,
    normalize_nullable_string,
    normalize_search_queries,
    require_fields,
    to_bool,
    truncate_text,
)
from pageflow.stages.recap import content_preview


@pytest.mark.unit
class TestValueHelpers:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (True, True),
            (False, False),
            (1, True),
            (0, False),
            ("yes", True),
            (" TRUE ", True),
            ("y", True),
            ("да", True),
            ("no", False),
            ("maybe", False),
            (None, False),
            ([], False),
        ],
    )
    def test_to_bool(self, value, expected):
        assert to_bool(value) is expected

    def test_search_queries_deduplicated_and_joined(self):
        text = "drill; Drill\ncordless drill, drill 18v,  ,power drill\r\nimpact driver"
        assert normalize_search_queries(text) == "drill, cordless drill, drill 18v, power drill, impact driver"

    def test_search_queries_capped(self):
        text = ", ".join(f"query {i}" for i in range(15))
        assert normalize_search_queries(text).count(",") == 9

    def test_search_queries_too_few(self):
        assert normalize_search_queries("a, b, c, d") is None
        assert normalize_search_queries(None) is None

    def test_search_queries_from_list(self):
        assert normalize_search_queries(["a", "b", "c", "d", "e"]) == "a, b, c, d, e"

    def test_truncate_text(self):
        assert truncate_text("short", 10) == "short"
        assert truncate_text("x" * 20, 10) == "x" * 10 + TRUNCATION_MARKER

    def test_normalize_nullable_string(self):
        assert normalize_nullable_string("  AB-12 ", 4) == "AB-1"
        assert normalize_nullable_string("", 4) is None
        assert normalize_nullable_string({"a": 1}, 4) is None
        assert normalize_nullable_string(12345, 10) == "12345"

    def test_require_fields(self):
        assert require_fields({"a": "x"}) == {"a": "x"}
        with pytest.raises(ValidationShapeError) as exc:
            require_fields({"a": "x", "b": None})
        assert exc.value.field == "b"

    def test_content_preview_strips_tags(self):
        assert content_preview("<p>Hello</p>\n\n  <b>world</b>") == "Hello world"
        assert content_preview("abcdef", max_chars=3) == "abc"


@pytest.mark.unit
class TestProductTypeStage:
    def test_product(self):
        stage = ProductTypeStage()
        fields = stage.normalize({"is_product": "true", "is_product_available": 0, "product_type": "  Drill "})
        assert fields == {"is_product": True, "is_product_available": False, "product_type": "Drill"}

    def test_not_a_product_clears_other_fields(self):
        fields = ProductTypeStage().normalize({"is_product": False, "is_product_available": True, "product_type": "x"})
        assert fields == {"is_product": False, "is_product_available": None, "product_type": None}

    def test_non_string_type_is_none(self):
        fields = ProductTypeStage().normalize({"is_product": True, "is_product_available": True, "product_type": 5})
        assert fields["product_type"] is None

    def test_user_content(self):
        page = PageRecord(id=1, url="https://shop.test/p", title="Drill", content_text="body text")
        content = ProductTypeStage().build_user_content(page)
        assert content.startswith("URL: https://shop.test/p\nTitle: Drill")
        assert content.endswith("body text")


@pytest.mark.unit
class TestRecapStage:
    def test_normalize(self):
        fields = RecapStage().normalize(
            {
                "product_summary": " A drill. ",
                "product_summary_specs": "18V",
                "product_abilities": "Drills",
                "product_predicted_search_text": "a\nb\nc\nd\ne",
            }
        )
        assert fields["product_summary"] == "A drill."
        assert fields["product_predicted_search_text"] == "a, b, c, d, e"

    def test_blank_field_is_shape_error(self):
        with pytest.raises(ValidationShapeError):
            RecapStage().normalize(
                {
                    "product_summary": "",
                    "product_summary_specs": "18V",
                    "product_abilities": "Drills",
                    "product_predicted_search_text": "a, b, c, d, e",
                }
            )

    def test_image_path_resolved_against_assets(self, tmp_path):
        page = PageRecord(id=1, url="u", screenshot_path="shots/1.png")
        assert RecapStage().image_path(page, tmp_path) == tmp_path / "shots" / "1.png"
        assert RecapStage().image_path(PageRecord(id=1, url="u"), tmp_path) is None

    def test_user_content_has_preview(self):
        page = PageRecord(id=1, url="u", meta_description="desc", content_text="<h1>Big</h1> drill")
        content = RecapStage().build_user_content(page)
        assert "Description: desc" in content
        assert "Content preview: Big drill" in content


@pytest.mark.unit
class TestAttributesStage:
    def test_normalize(self):
        fields = AttributesStage().normalize(
            {"product_original_article": "A1", "product_model_number": None, "attributes": {"Color": "red"}}
        )
        assert fields == {
            "json_attributes": {"Color": "red"},
            "product_original_article": "A1",
            "product_model_number": None,
        }

    def test_empty_list_is_empty_object(self):
        fields = AttributesStage().normalize(
            {"product_original_article": None, "product_model_number": "M", "attributes": []}
        )
        assert fields["json_attributes"] == {}

    def test_non_object_attributes(self):
        with pytest.raises(ValidationShapeError):
            AttributesStage().normalize(
                {"product_original_article": None, "product_model_number": "M", "attributes": ["Color: red"]}
            )

    def test_legacy_article_key(self):
        fields = AttributesStage().normalize({"product_code": "OLD-1", "product_model_number": "M", "attributes": {}})
        assert fields["product_original_article"] == "OLD-1"

    def test_missing_article_key(self):
        with pytest.raises(MissingRequiredKeyError):
            AttributesStage().normalize({"product_model_number": "M", "attributes": {}})

    def test_stamps_metadata_timestamp(self):
        assert AttributesStage().also_stamps == ("product_metadata_extracted_at",)


@pytest.mark.unit
class TestRegistry:
    def test_default_stages(self):
        assert default_registry().names() == ["crawl", "product_type", "recap", "attributes"]

    def test_unknown_stage(self):
        registry = default_registry()
        assert "recap" in registry
        with pytest.raises(UnknownStageError) as exc:
            registry.get("summarize")
        assert "product_type" in str(exc.value)

    def test_eligibility_sql_with_force(self):
        sql, _ = ProductTypeStage().eligibility_sql(0.0, force=True)
        assert "product_type_detected_at IS NULL" not in sql
        sql, _ = ProductTypeStage().eligibility_sql(0.0)
        assert "product_type_detected_at IS NULL" in sql


@pytest.mark.unit
class TestGeneratorStageContract:
    def test_stage_without_normalize_cannot_be_created(self):
        class Incomplete(GeneratorStage):
            name = "incomplete"

        with pytest.raises(TypeError):
            Incomplete()
