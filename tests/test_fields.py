"""
Unit tests for content and category extraction.
"""

import json

import pytest

from be.models import RecordCategory
from be.pipelines.fields import extract_category, extract_content, extract_fields


class TestContentResolution:
    """Content strategies in precedence order."""

    def test_bare_string_record(self):
        content, strategy = extract_content("Translate this paragraph into French")
        assert content == "Translate this paragraph into French"
        assert strategy == "bare_string"

    def test_known_field_precedence(self):
        """feedback outranks prompt in the field vocabulary."""
        record = {
            "prompt": "Write a haiku about rain",
            "feedback": "The haiku ignores the 5-7-5 structure",
        }
        content, strategy = extract_content(record)
        assert content == "The haiku ignores the 5-7-5 structure"
        assert strategy == "known_field"

    def test_structured_known_field_is_json(self):
        record = {"prompt": {"question": "What is the boiling point of water?"}}
        content, strategy = extract_content(record)
        assert strategy == "known_field"
        assert json.loads(content) == {"question": "What is the boiling point of water?"}

    def test_short_known_field_falls_back_to_longest_string(self):
        record = {"text": "ok", "notes": "reviewer says this needs more detail"}
        content, strategy = extract_content(record)
        assert content == "reviewer says this needs more detail"
        assert strategy == "longest_string"

    def test_short_known_field_kept_without_long_strings(self):
        record = {"text": "ok", "count": 3}
        content, _ = extract_content(record)
        assert content == "ok"

    def test_serialization_fallback(self):
        record = {"a": 1, "b": "short"}
        content, strategy = extract_content(record)
        assert strategy == "serialized"
        assert json.loads(content) == record

    @pytest.mark.parametrize(
        "record",
        [{}, {"x": None}, {"n": 42, "flag": True}, "", {"nested": {"deep": [1, 2]}}],
    )
    def test_content_is_never_empty(self, record):
        content, _ = extract_content(record)
        assert content


class TestCategoryResolution:
    """Tiered category detection."""

    @pytest.mark.parametrize("value", ["top_10", "Top 10%", "5", 0.95])
    def test_top_values(self, value):
        category, _ = extract_category({"rating": value})
        assert category == RecordCategory.TOP_10

    @pytest.mark.parametrize("value", ["bottom_10", "Bottom 10%", "1", 0.05])
    def test_bottom_values(self, value):
        category, _ = extract_category({"rating": value})
        assert category == RecordCategory.BOTTOM_10

    @pytest.mark.parametrize("value", ["maybe", "3", 0.5])
    def test_neutral_values(self, value):
        category, _ = extract_category({"rating": value})
        assert category is None

    @pytest.mark.parametrize("label", ["selected", "BETTER", " top "])
    def test_exact_top_labels(self, label):
        category, strategy = extract_category({"label": label})
        assert category == RecordCategory.TOP_10
        assert strategy == "label"

    def test_fractional_above_one_uses_ordinal_scale(self):
        category, strategy = extract_category({"avg_score": "4.5"})
        assert category == RecordCategory.TOP_10
        assert strategy == "number"

    def test_numeric_value_stops_search(self):
        """A neutral number does not fall through to field discovery."""
        category, strategy = extract_category({"rating": "3", "reviewer_rating": "top"})
        assert category is None
        assert strategy == "number"

    def test_discovered_rating_field(self):
        category, strategy = extract_category({"reviewer_score_label": "Top pick"})
        assert category == RecordCategory.TOP_10
        assert strategy == "discovered_field"

    def test_discovered_numeric_bottom(self):
        category, _ = extract_category({"overall_rating_v2": "2"})
        assert category == RecordCategory.BOTTOM_10

    def test_no_rating_anywhere(self):
        assert extract_category({"prompt": "hello there friend"}) == (None, None)

    def test_bare_string_has_no_category(self):
        assert extract_category("top 10 answer") == (None, None)


def test_extract_fields_combines_both():
    fields = extract_fields({"content": "Explain recursion to a child", "rating": "top10"})
    assert fields.content == "Explain recursion to a child"
    assert fields.category == RecordCategory.TOP_10
    assert fields.content_strategy == "known_field"
    assert fields.category_strategy == "label"
