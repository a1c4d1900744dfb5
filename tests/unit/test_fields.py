"""Unit tests for pollwise.fields."""

from __future__ import annotations

from pollwise.fields import extract_all_fields, find_arrays

QUOTE = {
    "data": {
        "symbol": "IBM",
        "price": 190.1,
        "history": [{"date": "2024-01-02", "close": 185.2}],
        "tags": ["tech", "dow"],
        "meta": {"source": {"name": "feed"}},
    }
}


class TestExtractAllFields:
    def test_paths_to_every_leaf(self) -> None:
        assert extract_all_fields(QUOTE) == [
            "data.symbol",
            "data.price",
            "data.history",
            "data.history[].date",
            "data.history[].close",
            "data.tags",
            "data.meta.source.name",
        ]

    def test_top_level_array(self) -> None:
        assert extract_all_fields([{"id": 1, "name": "a"}]) == ["[]", "[].id", "[].name"]

    def test_empty_inputs(self) -> None:
        assert extract_all_fields(None) == []
        assert extract_all_fields({}) == []
        assert extract_all_fields([]) == ["[]"]

    def test_null_leaf(self) -> None:
        assert extract_all_fields({"data": {"value": None}}) == ["data.value"]


class TestFindArrays:
    def test_finds_arrays_of_objects(self) -> None:
        arrays = find_arrays(QUOTE)
        assert list(arrays) == ["data.history"]
        assert arrays["data.history"] == QUOTE["data"]["history"]

    def test_nested_arrays(self) -> None:
        payload = {"groups": [{"members": [{"id": 1}]}]}
        arrays = find_arrays(payload)
        assert set(arrays) == {"groups", "groups[].members"}

    def test_top_level_array(self) -> None:
        payload = [{"id": 1}]
        assert find_arrays(payload) == {"[]": payload}

    def test_primitives_and_empty(self) -> None:
        assert find_arrays("text") == {}
        assert find_arrays({"items": []}) == {}
        assert find_arrays({"tags": ["a", "b"]}) == {}
