from __future__ import annotations

from nearby.core.contracts import DiscoveryItem, FilterSupport
from nearby.core.keying import normalize_filters
from nearby.services.facets import build_facets
from nearby.services.filtering import FULL_SUPPORT, PRE_HYDRATION_SUPPORT, combine_support, filter_items


def _item(id: str, **kw) -> DiscoveryItem:
    return DiscoveryItem(id=id, name=id, lat=0.0, lng=0.0, source="postgis", **kw)


ITEMS = [
    _item("a", activity_types=["climbing"], tags=["indoor"], price_levels=[1], capacity_key="small", time_window="evening"),
    _item("b", activity_types=["running"], tags=["outdoor"], price_levels=[2, 3], capacity_key="large"),
    _item("c", activity_types=None, tags=["indoor", "outdoor"]),
]


def test_list_dimensions_match_any_value():
    f = normalize_filters({"activity_types": ["climbing", "running"]})
    assert [it.id for it in filter_items(ITEMS, f, FULL_SUPPORT)] == ["a", "b"]

    f = normalize_filters({"tags": ["outdoor"], "price_levels": [3]})
    assert [it.id for it in filter_items(ITEMS, f, FULL_SUPPORT)] == ["b"]


def test_capacity_and_time_window_equality():
    f = normalize_filters({"capacity_key": "small", "time_window": "evening"})
    assert [it.id for it in filter_items(ITEMS, f, FULL_SUPPORT)] == ["a"]
    assert len(filter_items(ITEMS, normalize_filters({"capacity_key": "any"}), FULL_SUPPORT)) == 3


def test_unsupported_dimension_is_not_applied():
    f = normalize_filters({"price_levels": [4], "tags": ["indoor"]})
    assert filter_items(ITEMS, f, FULL_SUPPORT) == []
    assert [it.id for it in filter_items(ITEMS, f, PRE_HYDRATION_SUPPORT)] == ["a", "c"]


def test_combine_support_is_and():
    a = FilterSupport(tags=False)
    b = FilterSupport(traits=False)
    out = combine_support(a, b)
    assert out.tags is False and out.traits is False and out.activity_types is True
    assert combine_support(FULL_SUPPORT, FULL_SUPPORT) == FULL_SUPPORT


def test_facets_sorted_by_count_then_value():
    facets = build_facets(ITEMS)
    assert [(f.value, f.count) for f in facets.tags] == [("indoor", 2), ("outdoor", 2)]
    assert [(f.value, f.count) for f in facets.price_levels] == [("1", 1), ("2", 1), ("3", 1)]
    assert [(f.value, f.count) for f in facets.capacity_key] == [("large", 1), ("small", 1)]
    assert facets.traits == []


def test_facets_rank_higher_counts_first():
    items = ITEMS + [_item("d", tags=["outdoor"])]
    assert [f.value for f in build_facets(items).tags] == ["outdoor", "indoor"]
