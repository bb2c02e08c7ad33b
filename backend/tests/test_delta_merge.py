"""Tests for the delta merge engine."""

from pricepulse.services.delta_merge import (
    REMOVED_FLAG,
    MergeOptions,
    merge_results,
    product_key,
    should_rebuild,
    sort_by_price,
)


def item(name, price, site="amazon"):
    return {
        "site": site,
        "product_name": name,
        "price_amount": price,
        "url": f"https://www.{site}.sa/item/{name.lower()}?ref=search",
    }


class TestProductKey:
    def test_key_ignores_query_string(self):
        a = {"site": "noon", "url": "https://www.noon.com/p-123?x=1"}
        b = {"site": "noon", "url": "https://WWW.NOON.COM/p-123"}
        assert product_key(a) == product_key(b)

    def test_key_falls_back_to_name(self):
        assert product_key({"site": "noon", "name": "  Kettle "}) == "noon:kettle"

    def test_key_is_none_without_url_or_name(self):
        assert product_key({"site": "noon", "price": 5}) is None


class TestMergeResults:
    """Tests for merge_results partitions and the rebuild decision."""

    def test_reference_example(self):
        cached = [item("A", 100), item("B", 200)]
        fresh = [item("A", 95), item("C", 150)]

        result = merge_results(
            cached,
            fresh,
            MergeOptions(keep_removed_items=False, prioritize_new_prices=True),
        )

        assert [(i["product_name"], i["price_amount"]) for i in result.merged] == [("A", 95), ("C", 150)]
        assert [i["product_name"] for i in result.new_items] == ["C"]
        assert [i["product_name"] for i in result.updated_items] == ["A"]
        assert [i["product_name"] for i in result.removed_items] == ["B"]
        assert result.has_changes is True

    def test_identical_sets_have_no_changes(self):
        cached = [item("A", 100), item("B", 200)]
        fresh = [item("B", 200), item("A", 100)]

        result = merge_results(cached, fresh)

        assert result.has_changes is False
        assert len(result.unchanged_items) == 2
        assert result.reason == "no significant changes detected"

    def test_small_price_move_is_not_significant(self):
        cached = [item("A", 100)]
        fresh = [item("A", 103)]

        result = merge_results(cached, fresh)

        assert len(result.updated_items) == 1
        assert result.merged[0]["price_amount"] == 103
        assert result.has_changes is False

    def test_large_price_move_is_significant(self):
        result = merge_results([item("A", 100)], [item("A", 110)])
        assert result.has_changes is True
        assert "price" in result.reason

    def test_removal_ratio_over_threshold_triggers_rebuild(self):
        cached = [item(name, 10) for name in "ABCDEFGHIJ"]
        fresh = cached[:8]

        result = merge_results(cached, fresh)

        assert result.removal_ratio == 0.2
        assert result.has_changes is True

    def test_removal_at_threshold_does_not_trigger_rebuild(self):
        cached = [item(name, 10) for name in "ABCDEFGHIJ"]
        fresh = cached[:9]

        assert should_rebuild(cached, fresh) == (False, "no significant changes detected")

    def test_keep_removed_items_flags_them_last(self):
        cached = [item("A", 100), item("B", 5)]
        fresh = [item("A", 100)]

        result = merge_results(cached, fresh, MergeOptions(keep_removed_items=True))

        assert [i["product_name"] for i in result.merged] == ["A", "B"]
        assert result.merged[-1][REMOVED_FLAG] is True

    def test_removed_items_dropped_past_stale_threshold(self):
        cached = [item("A", 100), item("B", 5)]
        fresh = [item("A", 100)]

        result = merge_results(
            cached,
            fresh,
            MergeOptions(keep_removed_items=True, remove_stale_threshold=0.25),
        )

        assert [i["product_name"] for i in result.merged] == ["A"]

    def test_cached_prices_win_when_not_prioritizing_new(self):
        result = merge_results(
            [item("A", 100)],
            [item("A", 90)],
            MergeOptions(prioritize_new_prices=False),
        )
        assert result.merged[0]["price_amount"] == 100

    def test_duplicate_fresh_items_merge_once(self):
        result = merge_results([], [item("A", 10), item("A", 12)])
        assert len(result.merged) == 1
        assert len(result.new_items) == 1

    def test_empty_inputs(self):
        result = merge_results(None, None)
        assert result.merged == []
        assert result.has_changes is False

    def test_thresholds_come_from_options(self):
        options = MergeOptions(price_change_threshold=0.01)
        assert merge_results([item("A", 100)], [item("A", 103)], options).has_changes is True


def test_sort_by_price_puts_missing_prices_last():
    items = [{"name": "x"}, {"price": "20"}, {"price_amount": "5.50"}]
    assert sort_by_price(items) == [{"price_amount": "5.50"}, {"price": "20"}, {"name": "x"}]
