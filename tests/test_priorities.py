# =============================================================================
# Unit Tests — Priority Order Normalisation
# =============================================================================

from __future__ import annotations

from shop_assistant.services.priorities import (
    PRIORITY_KEYS,
    effective_priority_order,
    normalize_priority_order,
)


class TestNormalizePriorityOrder:
    def test_keeps_submitted_order(self):
        assert normalize_priority_order(["location", "price"]) == ["location", "price"]

    def test_drops_unknown_keys(self):
        assert normalize_priority_order(["speed", "price", "colour"]) == ["price"]

    def test_drops_duplicates_keeping_first(self):
        result = normalize_priority_order(["quality", "price", "quality", "price"])
        assert result == ["quality", "price"]

    def test_non_strings_ignored(self):
        assert normalize_priority_order([1, None, "price"]) == ["price"]

    def test_all_invalid_is_none(self):
        assert normalize_priority_order(["speed", "colour"]) is None

    def test_empty_and_none(self):
        assert normalize_priority_order([]) is None
        assert normalize_priority_order(None) is None

    def test_result_only_contains_valid_keys(self):
        result = normalize_priority_order(
            ["location", "x", "quality", "location", "price", "price", "y"]
        )
        assert result == ["location", "quality", "price"]
        assert all(key in PRIORITY_KEYS for key in result)
        assert len(set(result)) == len(result)


class TestEffectivePriorityOrder:
    def test_new_order_wins_and_needs_write(self):
        assert effective_priority_order(["price"], ["quality"]) == (["price"], True)

    def test_same_order_needs_no_write(self):
        assert effective_priority_order(["price", "x"], ["price"]) == (["price"], False)

    def test_invalid_request_keeps_stored(self):
        assert effective_priority_order(["bogus"], ["location"]) == (["location"], False)

    def test_nothing_requested_nothing_stored(self):
        assert effective_priority_order(None, None) == (None, False)

    def test_stored_value_not_a_list_is_ignored(self):
        assert effective_priority_order(None, {"price": 1}) == (None, False)
