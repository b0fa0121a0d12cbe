"""Tests for input-source filters."""

import pytest

from services.pipeline.filters import (
    OPERATORS,
    apply_filters,
    evaluate_condition,
    get_nested_value,
    item_matches,
)

ITEMS = [
    {"id": 1, "lang": "en", "meta": {"score": 0.9}, "tags": ["a", "b"], "title": "Alpha"},
    {"id": 2, "lang": "de", "meta": {"score": 0.2}, "tags": [], "title": "Beta"},
    {"id": 3, "lang": "en", "meta": {"score": 0.5}, "tags": ["b"], "title": "Gamma"},
]


class TestGetNestedValue:

    def test_dot_path(self):
        assert get_nested_value(ITEMS[0], "meta.score") == 0.9

    def test_list_index(self):
        assert get_nested_value(ITEMS[0], "tags.1") == "b"
        assert get_nested_value(ITEMS[0], "tags.9") is None

    def test_missing_segment(self):
        assert get_nested_value(ITEMS[0], "meta.missing.deeper") is None
        assert get_nested_value(None, "id") is None


class TestOperators:

    @pytest.mark.parametrize("operator, field, value, expected", [
        ("eq", "lang", "en", True),
        ("neq", "lang", "en", False),
        ("gt", "meta.score", 0.5, True),
        ("gte", "meta.score", "0.9", True),
        ("lt", "id", 2, True),
        ("lte", "id", 0, False),
        ("contains", "title", "lph", True),
        ("contains", "tags", "a", True),
        ("not_contains", "tags", "z", True),
        ("exists", "meta", None, True),
        ("not_exists", "missing", None, True),
        ("is_empty", "tags", None, False),
        ("is_not_empty", "tags", None, True),
        ("matches", "title", "^Al", True),
        ("in", "lang", ["en", "fr"], True),
        ("not_in", "lang", ["en", "fr"], False),
        ("starts_with", "title", "Alp", True),
        ("ends_with", "title", "pha", True),
    ])
    def test_operator(self, operator, field, value, expected):
        assert evaluate_condition({"field": field, "operator": operator, "value": value}, ITEMS[0]) is expected

    def test_unknown_operator_fails_closed(self):
        assert evaluate_condition({"field": "id", "operator": "approx", "value": 1}, ITEMS[0]) is False

    def test_invalid_regex_does_not_raise(self):
        assert evaluate_condition({"field": "title", "operator": "matches", "value": "("}, ITEMS[0]) is False

    def test_operator_table_complete(self):
        assert len(OPERATORS) == 17


class TestApplyFilters:

    def test_mapping_form_requires_all_pairs(self):
        assert [i["id"] for i in apply_filters(ITEMS, {"lang": "en"})] == [1, 3]
        assert apply_filters(ITEMS, {"lang": "en", "id": 3}) == [ITEMS[2]]

    def test_condition_form(self):
        kept = apply_filters(ITEMS, [{"field": "meta.score", "operator": "gte", "value": 0.5}])
        assert [i["id"] for i in kept] == [1, 3]

    def test_wrapped_array_filtered(self):
        kept = apply_filters({"data": ITEMS, "meta": {}}, {"lang": "de"})
        assert kept == [ITEMS[1]]

    def test_single_object_kept_or_dropped(self):
        assert apply_filters(ITEMS[0], {"lang": "en"}) == ITEMS[0]
        assert apply_filters(ITEMS[0], {"lang": "de"}) is None

    def test_no_filters_is_identity(self):
        assert apply_filters(ITEMS, None) is ITEMS
        assert apply_filters(ITEMS, {}) is ITEMS

    def test_non_dict_items_fail_mapping_form(self):
        assert item_matches("text", {"lang": "en"}) is False
        assert apply_filters(["x", {"lang": "en"}], {"lang": "en"}) == [{"lang": "en"}]
